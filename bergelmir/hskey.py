"""
Tor v3 hidden service key material.

The secret key file uses the layout Tor itself reads and writes:

    "== ed25519v1-secret: type0 ==" + 3 NUL bytes   (32 byte header)
    64 bytes of expanded ed25519 secret key
    "\\n"

The expanded key is SHA-512(seed) with the usual ed25519 clamping (section
A.2 of rend-spec-v3.txt). The onion address is

    base32(pubkey || SHA3-256(".onion checksum" || pubkey || 0x03)[:2] || 0x03)

in lowercase, followed by ".onion".
"""

import base64
import hashlib
import logging
import os
from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)

from .exceptions import HiddenServiceKeyError

log = logging.getLogger(__name__)

SECRET_KEY_TAG = b"== ed25519v1-secret: type0 =="
SECRET_KEY_HEADER = SECRET_KEY_TAG + b"\x00\x00\x00"
EXPANDED_KEY_SIZE = 64
KEY_OFFSET = len(SECRET_KEY_HEADER)
MIN_KEY_FILE_SIZE = KEY_OFFSET + EXPANDED_KEY_SIZE

ONION_CHECKSUM_PREFIX = b".onion checksum"
ONION_VERSION = b"\x03"


@dataclass(frozen=True)
class HiddenServiceKey:
    expanded_key: bytes
    # Only known for keys generated by this process; a loaded file carries
    # the secret half alone.
    public_key: Optional[bytes] = None

    @property
    def onion_address(self) -> Optional[str]:
        if self.public_key is None:
            return None
        return encode_onion_address(self.public_key)

    def to_base64(self) -> str:
        return base64.b64encode(self.expanded_key).decode("ascii")


def expand_seed(seed: bytes) -> bytes:
    h = bytearray(hashlib.sha512(seed).digest())
    h[0] &= 248
    h[31] &= 63
    h[31] |= 64
    return bytes(h)


def encode_onion_address(public_key: bytes) -> str:
    checksum = hashlib.sha3_256(
        ONION_CHECKSUM_PREFIX + public_key + ONION_VERSION
    ).digest()[:2]
    address = base64.b32encode(public_key + checksum + ONION_VERSION)
    return address.decode("ascii").lower() + ".onion"


def generate_key(seed: Optional[bytes] = None) -> HiddenServiceKey:
    if seed is None:
        private_key = Ed25519PrivateKey.generate()
        seed = private_key.private_bytes(
            Encoding.Raw, PrivateFormat.Raw, NoEncryption()
        )
    else:
        private_key = Ed25519PrivateKey.from_private_bytes(seed)
    public_key = private_key.public_key().public_bytes(
        Encoding.Raw, PublicFormat.Raw
    )
    return HiddenServiceKey(expand_seed(seed), public_key)


def write_key_file(path: str, key: HiddenServiceKey) -> None:
    content = SECRET_KEY_HEADER + key.expanded_key + b"\n"
    try:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, mode=0o700, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(content)
        os.chmod(path, 0o600)
    except OSError as e:
        raise HiddenServiceKeyError(
            f"Unable to write hidden service key file {path}"
        ) from e


def read_key_file(path: str) -> Optional[HiddenServiceKey]:
    """Return the key stored at `path`, or None if it is missing or too short."""
    try:
        with open(path, "rb") as f:
            content = f.read()
    except OSError:
        return None
    if len(content) < MIN_KEY_FILE_SIZE:
        return None
    return HiddenServiceKey(content[KEY_OFFSET:MIN_KEY_FILE_SIZE])


def resolve_key(path: str, seed: Optional[bytes] = None) -> HiddenServiceKey:
    key = read_key_file(path)
    if key is not None:
        log.info("[HS KEY] Using hidden service key from %s", path)
        return key

    log.info("[HS KEY] Generating new hidden service key at %s", path)
    key = generate_key(seed)
    write_key_file(path, key)
    return key
