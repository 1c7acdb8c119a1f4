import datetime
import enum
import logging
import os
import secrets
from dataclasses import dataclass
from typing import List, Optional, Sequence

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID
from OpenSSL import SSL

from .exceptions import CertificateError

log = logging.getLogger(__name__)

# Clients pin the certificate (TOFU), so the validity window is fixed.
NOT_VALID_BEFORE = datetime.datetime(2000, 1, 1, tzinfo=datetime.timezone.utc)
NOT_VALID_AFTER = datetime.datetime(2200, 1, 1, tzinfo=datetime.timezone.utc)
SERIAL_NUMBER_BITS = 128


class KeyKind(enum.Enum):
    ED25519 = "ed25519"
    ECDSA = "ecdsa"
    RSA = "rsa"


@dataclass(frozen=True)
class ServerKey:
    kind: KeyKind
    private_key: object

    @classmethod
    def from_private_key(cls, private_key) -> Optional["ServerKey"]:
        if isinstance(private_key, ed25519.Ed25519PrivateKey):
            return cls(KeyKind.ED25519, private_key)
        if isinstance(private_key, ec.EllipticCurvePrivateKey):
            return cls(KeyKind.ECDSA, private_key)
        if isinstance(private_key, rsa.RSAPrivateKey):
            return cls(KeyKind.RSA, private_key)
        return None

    @classmethod
    def generate(cls) -> "ServerKey":
        return cls(KeyKind.ED25519, ed25519.Ed25519PrivateKey.generate())

    def public_key(self):
        return self.private_key.public_key()

    def key_usage(self) -> x509.KeyUsage:
        return x509.KeyUsage(
            digital_signature=True,
            content_commitment=False,
            key_encipherment=self.kind is KeyKind.RSA,
            data_encipherment=False,
            key_agreement=False,
            key_cert_sign=True,
            crl_sign=False,
            encipher_only=False,
            decipher_only=False,
        )

    def signature_hash(self):
        if self.kind is KeyKind.ED25519:
            return None
        return hashes.SHA256()

    def to_pem(self) -> bytes:
        return self.private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )

    def public_bytes(self) -> bytes:
        return public_key_bytes(self.public_key())


@dataclass(frozen=True)
class Certificate:
    certificate: x509.Certificate
    key: ServerKey
    cert_path: str
    key_path: str

    @property
    def dns_names(self) -> List[str]:
        return certificate_dns_names(self.certificate)


def public_key_bytes(public_key) -> bytes:
    return public_key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def certificate_dns_names(certificate: x509.Certificate) -> List[str]:
    try:
        san = certificate.extensions.get_extension_for_class(
            x509.SubjectAlternativeName
        )
    except x509.ExtensionNotFound:
        return []
    return san.value.get_values_for_type(x509.DNSName)


def covers_exactly(certificate: x509.Certificate, domains: Sequence[str]) -> bool:
    """True when the certificate's DNS names are the same set as `domains`."""
    names = certificate_dns_names(certificate)
    return len(names) == len(domains) and set(names) == set(domains)


def generate_certificate(key: ServerKey, domains: Sequence[str]) -> x509.Certificate:
    name = x509.Name([])
    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(secrets.randbelow(2 ** SERIAL_NUMBER_BITS - 1) + 1)
        .not_valid_before(NOT_VALID_BEFORE)
        .not_valid_after(NOT_VALID_AFTER)
        .add_extension(key.key_usage(), critical=True)
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
        )
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
            critical=False,
        )
    )
    return builder.sign(key.private_key, key.signature_hash())


def load_private_key(key_path: str) -> Optional[ServerKey]:
    """Return the private key at `key_path` if it exists and is usable."""
    try:
        with open(key_path, "rb") as f:
            data = f.read()
        private_key = serialization.load_pem_private_key(data, password=None)
    except (OSError, ValueError, TypeError, UnsupportedAlgorithm):
        return None
    return ServerKey.from_private_key(private_key)


def load_certificate(cert_path: str, key: Optional[ServerKey]) -> Optional[x509.Certificate]:
    """Return the certificate at `cert_path` if it loads and matches `key`."""
    if key is None:
        return None
    try:
        with open(cert_path, "rb") as f:
            certificate = x509.load_pem_x509_certificate(f.read())
        cert_public = public_key_bytes(certificate.public_key())
    except (OSError, ValueError, UnsupportedAlgorithm):
        return None
    if cert_public != key.public_bytes():
        return None
    return certificate


def _write_private_file(path: str, content: bytes, what: str) -> None:
    try:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, mode=0o700, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(content)
        os.chmod(path, 0o600)
    except OSError as e:
        raise CertificateError(f"Unable to write {what} file {path}") from e


def write_certificate(cert_path: str, certificate: x509.Certificate) -> None:
    log.info("[TLS] Writing TLS certificate to %s", cert_path)
    _write_private_file(
        cert_path, certificate.public_bytes(serialization.Encoding.PEM), "TLS certificate"
    )


def write_private_key(key_path: str, key: ServerKey) -> None:
    log.info("[TLS] Writing TLS private key to %s", key_path)
    _write_private_file(key_path, key.to_pem(), "TLS key")


def load_or_create_certificate(
    cert_path: str, key_path: str, domains: Sequence[str]
) -> Certificate:
    """
    Return a certificate whose DNS names are exactly `domains`.

    A usable key on disk is always kept; the certificate is regenerated when
    it is missing, does not belong to the key, or covers a different domain
    set. Only a freshly generated key is written back.
    """
    domains = list(domains)
    key = load_private_key(key_path)
    certificate = load_certificate(cert_path, key)

    if certificate is None:
        fresh_key = key is None
        if fresh_key:
            log.info("[TLS] Generating new TLS certificate and TLS private key")
            key = ServerKey.generate()
        else:
            log.info("[TLS] Generating new TLS certificate")
        certificate = generate_certificate(key, domains)
        write_certificate(cert_path, certificate)
        if fresh_key:
            write_private_key(key_path, key)
    elif not covers_exactly(certificate, domains):
        log.info("[TLS] Generating new TLS certificate from TLS private key")
        certificate = generate_certificate(key, domains)
        write_certificate(cert_path, certificate)

    return Certificate(certificate, key, cert_path, key_path)


def ssl_context(certificate: Certificate) -> SSL.Context:
    ctx = SSL.Context(SSL.TLS_SERVER_METHOD)
    ctx.set_options(SSL.OP_NO_COMPRESSION)
    try:
        ctx.use_certificate_file(certificate.cert_path)
        ctx.use_privatekey_file(certificate.key_path)
        ctx.check_privatekey()
    except SSL.Error as e:
        raise CertificateError(
            "Unable to load generated TLS certificate and key",
            {"cert": certificate.cert_path, "key": certificate.key_path},
        ) from e
    return ctx
