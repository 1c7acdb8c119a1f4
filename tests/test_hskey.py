import os
import stat

from bergelmir import hskey

SEED = b"\x42" * 32
SEED_PUBLIC_KEY = bytes.fromhex(
    "2152f8d19b791d24453242e15f2eab6cb7cffa7b6a5ed30097960e069881db12"
)
SEED_ONION = "efjprum3peosirjsilqv6lvlns3476t3njpngaexsyhangeb3mjo7sad.onion"
SEED_EXPANDED = bytes.fromhex(
    "90e7595fc89e52fdfddce9c6a43d74dbf6047025ee0462d2d172e8b6a2841d6e"
    "eda66ce2983f7ff7e47c49615220e78c25c775a040957316b7bafd5985450f90"
)


def test_header_layout():
    assert len(hskey.SECRET_KEY_HEADER) == 32
    assert hskey.MIN_KEY_FILE_SIZE == 96


def test_onion_address_of_known_public_key():
    assert (
        hskey.encode_onion_address(bytes(range(32)))
        == "aaaqeayeaudaocajbifqydiob4ibceqtcqkrmfyydenbwha5dyp3kead.onion"
    )


def test_expand_seed():
    expanded = hskey.expand_seed(SEED)
    assert expanded == SEED_EXPANDED
    assert expanded[0] & 7 == 0
    assert expanded[31] & 0xC0 == 0x40


def test_generate_key_from_seed():
    key = hskey.generate_key(SEED)
    assert key.public_key == SEED_PUBLIC_KEY
    assert key.expanded_key == SEED_EXPANDED
    assert key.onion_address == SEED_ONION
    assert len(key.onion_address) == 62


def test_generate_random_key():
    a, b = hskey.generate_key(), hskey.generate_key()
    assert len(a.expanded_key) == 64
    assert a.expanded_key != b.expanded_key
    assert a.onion_address.endswith(".onion")


def test_file_roundtrip(tmp_path):
    path = str(tmp_path / "tor" / "hs_ed25519_secret_key")
    key = hskey.generate_key(SEED)
    hskey.write_key_file(path, key)

    with open(path, "rb") as f:
        content = f.read()
    assert len(content) == 97
    assert content.startswith(b"== ed25519v1-secret: type0 ==\x00\x00\x00")
    assert content.endswith(b"\n")
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    loaded = hskey.read_key_file(path)
    assert loaded.expanded_key == SEED_EXPANDED
    assert loaded.public_key is None
    assert loaded.to_base64() == key.to_base64()


def test_short_file_is_ignored(tmp_path):
    path = tmp_path / "hs_ed25519_secret_key"
    path.write_bytes(b"\x00" * 95)
    assert hskey.read_key_file(str(path)) is None


def test_resolve_key_reuses_existing(tmp_path):
    path = str(tmp_path / "hs_ed25519_secret_key")
    first = hskey.resolve_key(path, SEED)
    assert first.onion_address == SEED_ONION
    second = hskey.resolve_key(path)
    assert second.expanded_key == first.expanded_key


def test_resolve_key_replaces_short_file(tmp_path):
    path = tmp_path / "hs_ed25519_secret_key"
    path.write_bytes(b"garbage")
    key = hskey.resolve_key(str(path), SEED)
    assert key.expanded_key == SEED_EXPANDED
    assert len(path.read_bytes()) == 97
