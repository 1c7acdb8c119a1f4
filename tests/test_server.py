import socket
import ssl
import threading

import pytest
from cryptography import x509

from bergelmir.exceptions import ListenerError
from bergelmir.gemini import GeminiRequest
from bergelmir.hosts import VirtualHostTable
from bergelmir.server import GeminiServer, base_url, bind, handle_request
from bergelmir.tls import load_or_create_certificate


def test_index_page(conn, hosts, resolver):
    handle_request(conn, b"gemini://example.org/\r\n", hosts, resolver)
    assert conn.sent == b"20 text/gemini\r\n# Home\n\nWelcome.\n"


def test_page_without_extension(conn, hosts, resolver):
    handle_request(conn, b"gemini://example.org/about\r\n", hosts, resolver)
    assert conn.sent == b"20 text/gemini\r\n# About\n"


def test_binary_file_is_streamed(conn, hosts, resolver):
    handle_request(conn, b"gemini://localhost/image.png\r\n", hosts, resolver)
    assert conn.sent == b"20 image/png\r\n\x89PNG\r\n\x1a\nnot really"


def test_not_found(conn, hosts, resolver):
    handle_request(conn, b"gemini://example.org/missing\r\n", hosts, resolver)
    assert conn.sent == b"51 Page Not Found\r\n"


def test_wrong_host(conn, hosts, resolver):
    handle_request(conn, b"gemini://wrong.org/\r\n", hosts, resolver)
    assert conn.sent == b"53 Invalid Host\r\n"


def test_oversize_request(conn, hosts, resolver):
    handle_request(conn, b"gemini://example.org/" + b"a" * 1100 + b"\r\n", hosts, resolver)
    assert conn.sent == b"59 Invalid Request\r\n"


def test_sibling_of_data_root_is_not_served(conn, hosts, resolver, capsule_root):
    sibling = capsule_root / "example.org"
    sibling.mkdir()
    (sibling / "secret.gmi").write_bytes(b"outside the capsule\n")
    for path in (b"/../example.org/secret", b"/%2e%2e/example.org/secret"):
        conn.sent = b""
        handle_request(conn, b"gemini://example.org" + path + b"\r\n", hosts, resolver)
        assert conn.sent == b"59 Invalid Request\r\n"


def test_unterminated_request_gets_no_answer(conn, hosts, resolver):
    handle_request(conn, b"gemini://example.org/", hosts, resolver)
    assert conn.sent == b""


def test_feed(conn, hosts, resolver):
    handle_request(conn, b"gemini://example.org/feed\r\n", hosts, resolver)
    header, body = conn.sent.split(b"\r\n", 1)
    assert header == b"20 application/rss+xml"
    assert b"gemini://example.org/blog/second.gmi" in body


def test_base_url():
    assert base_url(GeminiRequest("", "gemini", "example.org", 1965, "/")) == "gemini://example.org"
    assert base_url(GeminiRequest("", "gemini", "::1", 1966, "/")) == "gemini://[::1]:1966"


def test_bind_rejects_udp():
    with pytest.raises(ListenerError):
        bind("udp:127.0.0.1:0")


def test_bind_unix_socket(tmp_path):
    path = str(tmp_path / "capsule.sock")
    open(path, "w").close()
    sock = bind("unix:" + path)
    try:
        assert sock.family == socket.AF_UNIX
    finally:
        sock.close()


def test_bind_address_in_use():
    first = bind("127.0.0.1:0")
    try:
        port = first.getsockname()[1]
        with pytest.raises(ListenerError):
            bind(f"127.0.0.1:{port}")
    finally:
        first.close()


@pytest.fixture
def tls_server(tmp_path, resolver):
    certificate = load_or_create_certificate(
        str(tmp_path / "cert.pem"), str(tmp_path / "cert.key"), ["localhost"]
    )
    server = GeminiServer("127.0.0.1:0", certificate, None, resolver, timeout=5)
    server.bind()
    port = server.address[1]
    server.hosts = VirtualHostTable({"localhost": port})
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    thread.join(timeout=5)


def fetch(port, request):
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    with socket.create_connection(("127.0.0.1", port), timeout=5) as sock:
        with context.wrap_socket(sock, server_hostname="localhost") as tls_sock:
            tls_sock.sendall(request)
            data = b""
            while True:
                try:
                    chunk = tls_sock.recv(4096)
                except OSError:
                    break
                if not chunk:
                    break
                data += chunk
    return data


def test_tls_roundtrip(tls_server):
    port = tls_server.address[1]
    response = fetch(port, f"gemini://localhost:{port}/\r\n".encode())
    assert response == b"20 text/gemini\r\n# Home\n\nWelcome.\n"


def test_tls_rejects_unknown_host(tls_server):
    port = tls_server.address[1]
    assert fetch(port, f"gemini://wrong.org:{port}/\r\n".encode()) == b"53 Invalid Host\r\n"


def test_tls_certificate_names(tls_server):
    port = tls_server.address[1]
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    with socket.create_connection(("127.0.0.1", port), timeout=5) as sock:
        with context.wrap_socket(sock, server_hostname="localhost") as tls_sock:
            der = tls_sock.getpeercert(binary_form=True)
            tls_sock.sendall(b"\r\n")
    names = x509.load_der_x509_certificate(der).extensions.get_extension_for_class(
        x509.SubjectAlternativeName
    ).value.get_values_for_type(x509.DNSName)
    assert names == ["localhost"]
