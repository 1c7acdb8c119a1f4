"""
Tor control protocol client.

Authenticates to the local control port with SAFECOOKIE and provisions a
detached v3 onion service:

    -> AUTHCHALLENGE SAFECOOKIE <client nonce>
    <- 250 AUTHCHALLENGE SERVERHASH=<hex> SERVERNONCE=<hex>
    -> AUTHENTICATE <HMAC-SHA256(cookie || client nonce || server nonce)>
    -> ADD_ONION ED25519-V3:<key> Flags=DiscardPK,Detach Port=<v>,<target> ...
    <- 250-ServiceID=<base32>

The calling thread writes commands; a background reader thread scans the
replies and hands the server nonce and the service id back through one-shot
futures.
"""

import binascii
import enum
import hashlib
import hmac
import logging
import os
import re
import socket
import subprocess
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import List, Optional, Sequence

from . import hskey
from .config import TOR_CONTROL_TIMEOUT_S, TOR_DEFAULT_CONTROL_ADDRESS
from .exceptions import TorControlError
from .hosts import parse_location, split_host_port

log = logging.getLogger(__name__)

TOR_HMAC_SECRET = b"Tor safe cookie authentication controller-to-server hash"
TOR_SERVER_HMAC_SECRET = b"Tor safe cookie authentication server-to-controller hash"

SERVER_NONCE_RE = re.compile(rb" SERVERNONCE=([0-9A-Fa-f]+)")
SERVER_HASH_RE = re.compile(rb" SERVERHASH=([0-9A-Fa-f]+)")
SERVICE_ID_RE = re.compile(rb"250-ServiceID=([2-7A-Za-z]+)")
ERROR_REPLY_RE = re.compile(rb"^[45]\d\d[ -]")
CONTROL_PORT_RE = re.compile(r"^(UNIX_)?PORT=(\S+)", re.MULTILINE)

CLIENT_NONCE_SIZE = 32
CONTROL_PORT_FILE_ATTEMPTS = 5
CONTROL_PORT_FILE_DELAY_S = 0.1


class TorState(enum.Enum):
    DISCONNECTED = "disconnected"
    CHALLENGE_SENT = "challenge sent"
    SERVER_NONCE_RECEIVED = "server nonce received"
    AUTHENTICATED = "authenticated"
    ONION_REQUESTED = "onion requested"
    READY = "ready"


@dataclass(frozen=True)
class OnionPort:
    virtual_port: int
    target: str

    def __str__(self) -> str:
        return f"Port={self.virtual_port},{self.target}"


def read_control_address(
    port_file: str,
    attempts: int = CONTROL_PORT_FILE_ATTEMPTS,
    delay: float = CONTROL_PORT_FILE_DELAY_S,
) -> str:
    """
    Read the control address Tor wrote to `port_file`.

    Tor writes the file shortly after it starts, so a few reads are tried
    before settling on the conventional default.
    """
    for attempt in range(attempts):
        try:
            with open(port_file, "r", encoding="utf-8") as f:
                m = CONTROL_PORT_RE.search(f.read())
        except OSError:
            m = None
        if m:
            return ("unix:" if m.group(1) else "") + m.group(2)
        if attempt + 1 < attempts:
            time.sleep(delay)
    log.warning(
        "[TOR] No control port in %s, using %s", port_file, TOR_DEFAULT_CONTROL_ADDRESS
    )
    return TOR_DEFAULT_CONTROL_ADDRESS


def safecookie_hmac(
    secret: bytes, cookie: bytes, client_nonce: bytes, server_nonce: bytes
) -> bytes:
    return hmac.new(secret, cookie + client_nonce + server_nonce, hashlib.sha256).digest()


def add_onion_command(key: hskey.HiddenServiceKey, ports: Sequence[OnionPort]) -> str:
    command = f"ADD_ONION ED25519-V3:{key.to_base64()} Flags=DiscardPK,Detach"
    for port in ports:
        command += f" {port}"
    return command


def connect_control(address: str, timeout: float) -> socket.socket:
    protocol, location = parse_location(address)
    try:
        if protocol == "unix":
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            sock.settimeout(timeout)
            sock.connect(location)
        else:
            host, port = split_host_port(location)
            sock = socket.create_connection((host or "127.0.0.1", port), timeout=timeout)
    except (OSError, TypeError) as e:
        raise TorControlError(
            "Unable to connect to Tor control port", {"address": address}
        ) from e
    sock.settimeout(None)
    return sock


class TorControlClient:
    """
    One control-protocol session, used once at start-up.

    Nothing is retried: any socket error, error reply or timeout aborts the
    session with TorControlError.
    """

    def __init__(
        self,
        control_address: str,
        cookie_path: str,
        key_path: str,
        ports: Sequence[OnionPort],
        timeout: float = TOR_CONTROL_TIMEOUT_S,
        client_nonce: Optional[bytes] = None,
        key_seed: Optional[bytes] = None,
    ):
        self.control_address = control_address
        self.cookie_path = cookie_path
        self.key_path = key_path
        self.ports: List[OnionPort] = list(ports)
        self.timeout = timeout
        self.client_nonce = client_nonce or os.urandom(CLIENT_NONCE_SIZE)
        self.key_seed = key_seed
        self.state = TorState.DISCONNECTED
        self.onion_address: Optional[str] = None

        self._sock: Optional[socket.socket] = None
        self._reader: Optional[threading.Thread] = None
        self._server_nonce: Future = Future()
        self._service_id: Future = Future()

    def start(self) -> str:
        """Run the whole handshake and return the onion address."""
        self._sock = connect_control(self.control_address, self.timeout)
        self._reader = threading.Thread(
            target=self._read_loop, name="tor-control-reader", daemon=True
        )
        self._reader.start()
        try:
            self._send(f"AUTHCHALLENGE SAFECOOKIE {self.client_nonce.hex()}")
            self.state = TorState.CHALLENGE_SENT

            server_hash, server_nonce = self._wait(self._server_nonce, "server nonce")
            self.state = TorState.SERVER_NONCE_RECEIVED

            self._authenticate(server_hash, server_nonce)
            self.state = TorState.AUTHENTICATED

            key = hskey.resolve_key(self.key_path, self.key_seed)
            self._send(add_onion_command(key, self.ports))
            self.state = TorState.ONION_REQUESTED

            service_id = self._wait(self._service_id, "onion service id")
        finally:
            self.close()

        self.onion_address = service_id.lower() + ".onion"
        if key.onion_address and key.onion_address != self.onion_address:
            log.warning(
                "[TOR] Tor reported %s but the generated key derives %s",
                self.onion_address,
                key.onion_address,
            )
        self.state = TorState.READY
        return self.onion_address

    def close(self) -> None:
        if self._sock is None:
            return
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()
        self._sock = None

    def _authenticate(self, server_hash: Optional[bytes], server_nonce: bytes) -> None:
        try:
            with open(self.cookie_path, "rb") as f:
                cookie = f.read()
        except OSError as e:
            raise TorControlError(
                "Unable to read Tor control auth cookie", {"path": self.cookie_path}
            ) from e

        if server_hash is not None:
            expected = safecookie_hmac(
                TOR_SERVER_HMAC_SECRET, cookie, self.client_nonce, server_nonce
            )
            if not hmac.compare_digest(expected, server_hash):
                raise TorControlError("Tor control port sent an invalid SERVERHASH")

        auth = safecookie_hmac(TOR_HMAC_SECRET, cookie, self.client_nonce, server_nonce)
        self._send(f"AUTHENTICATE {auth.hex()}")

    def _send(self, command: str) -> None:
        log.debug("[TOR] -> %s", command.split(" ", 1)[0])
        try:
            self._sock.sendall(command.encode("ascii") + b"\r\n")
        except OSError as e:
            self.close()
            raise TorControlError("Unable to write to Tor control port") from e

    def _wait(self, future: Future, what: str):
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError:
            raise TorControlError(
                f"Timed out waiting for {what} from Tor control port",
                {"timeout": self.timeout},
            ) from None

    def _fail(self, error: TorControlError) -> None:
        for future in (self._server_nonce, self._service_id):
            if not future.done():
                future.set_exception(error)

    def _read_loop(self) -> None:
        sock = self._sock
        buf = b""
        while True:
            try:
                chunk = sock.recv(1024)
            except OSError as e:
                self._fail(TorControlError(f"Tor control connection failed: {e}"))
                return
            if not chunk:
                self._fail(TorControlError("Tor control connection closed"))
                return
            buf += chunk
            *lines, buf = buf.split(b"\n")
            for line in lines:
                if self._handle_line(line.rstrip(b"\r")):
                    return

    def _handle_line(self, line: bytes) -> bool:
        """Process one reply line, return True once the session is complete."""
        if ERROR_REPLY_RE.match(line):
            self._fail(
                TorControlError(
                    "Tor control port refused the request",
                    {"reply": line.decode("utf-8", "replace")},
                )
            )
            return True

        m = SERVER_NONCE_RE.search(line)
        if m and not self._server_nonce.done():
            try:
                server_nonce = binascii.unhexlify(m.group(1))
                h = SERVER_HASH_RE.search(line)
                server_hash = binascii.unhexlify(h.group(1)) if h else None
            except binascii.Error:
                self._fail(TorControlError("Malformed AUTHCHALLENGE reply"))
                return True
            self._server_nonce.set_result((server_hash, server_nonce))
            return False

        m = SERVICE_ID_RE.search(line)
        if m:
            self._service_id.set_result(m.group(1).decode("ascii"))
            return True
        return False


class TorProcess:
    """The `tor` daemon launched with the capsule's own torrc."""

    def __init__(self, torrc_path: str):
        self.torrc_path = torrc_path
        self.process: Optional[subprocess.Popen] = None

    def start(self) -> None:
        try:
            self.process = subprocess.Popen(["tor", "-f", self.torrc_path])
        except OSError as e:
            raise TorControlError(
                "Unable to start tor.  Is tor installed on your system?"
            ) from e

    def kill(self) -> None:
        if self.process is not None and self.process.poll() is None:
            self.process.kill()
            self.process.wait()
