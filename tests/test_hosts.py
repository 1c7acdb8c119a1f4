import pytest

from bergelmir.hosts import (
    VirtualHostTable,
    build_domain_set,
    parse_location,
    split_host_port,
)

ONION = "aaaqeayeaudaocajbifqydiob4ibceqtcqkrmfyydenbwha5dyp3kead.onion"


@pytest.mark.parametrize(
    "location,expected",
    [
        ("127.0.0.1:1965", ("tcp", "127.0.0.1:1965")),
        ("tcp:0.0.0.0:80", ("tcp", "0.0.0.0:80")),
        ("UNIX:/run/capsule.sock", ("unix", "/run/capsule.sock")),
        ("udp:[::1]:1965", ("udp", "[::1]:1965")),
    ],
)
def test_parse_location(location, expected):
    assert parse_location(location) == expected


@pytest.mark.parametrize(
    "address,expected",
    [
        ("127.0.0.1:1965", ("127.0.0.1", 1965)),
        ("[::1]:8080", ("::1", 8080)),
        (":1965", ("", 1965)),
        ("1965", ("", 1965)),
        ("example.org", ("example.org", None)),
        ("example.org:notaport", ("example.org", None)),
    ],
)
def test_split_host_port(address, expected):
    assert split_host_port(address) == expected


def test_domain_set_defaults_to_localhost():
    assert build_domain_set([]) == ("localhost",)


def test_domain_set_dedupes_and_lowercases():
    assert build_domain_set(["Example.org", "example.org", " b.net "]) == (
        "example.org",
        "b.net",
    )


def test_domain_set_appends_onion():
    assert build_domain_set(["example.org"], ONION) == ("example.org", ONION)
    assert build_domain_set([], ONION) == ("localhost", ONION)


def test_host_table_ports():
    table = VirtualHostTable.build(
        ["example.org", ONION], "0.0.0.0:1966", ONION, tor_virtual_port=1965
    )
    assert table.port_for("example.org") == 1966
    assert table.port_for("EXAMPLE.ORG") == 1966
    assert table.port_for(ONION) == 1965
    assert table.port_for("other.org") is None
    assert "example.org" in table
    assert len(table) == 2


def test_host_table_unix_socket_uses_default_port():
    table = VirtualHostTable.build(["example.org"], "unix:/tmp/capsule.sock")
    assert table.as_dict() == {"example.org": 1965}


def test_host_table_is_read_only():
    table = VirtualHostTable({"example.org": 1965})
    with pytest.raises(TypeError):
        table._ports["evil.org"] = 1965
