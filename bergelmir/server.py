# Gemini TLS server (pyOpenSSL), one thread per connection, one request per connection

import logging
import os
import socket
import threading
from typing import Optional

from OpenSSL import SSL

from .config import GEMINI_DEFAULT_PORT, TIMEOUT_S
from .content import ContentResolver
from .exceptions import ListenerError
from .gemini import GeminiRequest, RequestError, Status, parse_request
from .hosts import VirtualHostTable, parse_location, split_host_port
from .tls import Certificate, ssl_context
from .utils import TimedConnection, gem_send, recv_request

log = logging.getLogger(__name__)


def base_url(request: GeminiRequest) -> str:
    host = request.hostname
    if ":" in host:
        host = f"[{host}]"
    if request.port != GEMINI_DEFAULT_PORT:
        host += f":{request.port}"
    return f"gemini://{host}"


def respond(conn, request: GeminiRequest, resolver: ContentResolver) -> None:
    content = resolver.resolve(request.path, base_url(request))
    if content is None:
        gem_send(conn, Status.NOT_FOUND, "Page Not Found")
        return
    if isinstance(content.body, bytes):
        gem_send(conn, Status.SUCCESS, content.mimetype, content.body)
        return
    gem_send(conn, Status.SUCCESS, content.mimetype)
    try:
        for data in content.body:
            conn.sendall(data)
    except (SSL.Error, OSError) as e:
        # Header already sent, the only option left is closing the connection
        log.error("[ERROR] Body of %s truncated: %s", request.url, e)


def handle_request(
    conn, raw: bytes, hosts: VirtualHostTable, resolver: ContentResolver, addr=None
) -> None:
    """Answer the request line `raw` read from `conn`."""
    try:
        request = parse_request(raw, hosts)
    except RequestError as e:
        log.info("[REJECT] %r from %s: %s", raw[:80], addr, e)
        if e.status is not None:
            gem_send(conn, e.status, e.meta)
        return

    log.info("[REQ] %s from %s", request.url, addr)
    respond(conn, request, resolver)


def bind(listening_location: str) -> socket.socket:
    protocol, address = parse_location(listening_location)
    try:
        if protocol == "udp":
            raise ListenerError(
                "Gemini requires a stream socket, udp is not supported",
                {"location": listening_location},
            )
        if protocol == "unix":
            if os.path.exists(address):
                os.unlink(address)
            base = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            base.bind(address)
        else:
            host, port = split_host_port(address)
            if port is None:
                port = GEMINI_DEFAULT_PORT
            if not host and socket.has_dualstack_ipv6():
                # IPv6 dual-stack socket, covers IPv4 too
                base = socket.create_server(
                    ("", port), family=socket.AF_INET6, dualstack_ipv6=True
                )
            else:
                family = socket.AF_INET6 if ":" in host else socket.AF_INET
                base = socket.create_server((host, port), family=family)
        base.listen(socket.SOMAXCONN)
    except OSError as e:
        raise ListenerError(
            f"Unable to create Gemini capsule network at {listening_location}"
        ) from e
    return base


class GeminiServer:
    """
    TLS listener for the capsule.

    The host table and the certificate are fixed for the lifetime of the
    server; every accepted socket gets its own thread.
    """

    def __init__(
        self,
        listening_location: str,
        certificate: Certificate,
        hosts: VirtualHostTable,
        resolver: ContentResolver,
        timeout: float = TIMEOUT_S,
    ):
        self.listening_location = listening_location
        self.hosts = hosts
        self.resolver = resolver
        self.timeout = timeout
        self.context = ssl_context(certificate)
        self.socket: Optional[socket.socket] = None
        self._closing = threading.Event()

    def bind(self) -> socket.socket:
        self.socket = bind(self.listening_location)
        return self.socket

    @property
    def address(self):
        return self.socket.getsockname() if self.socket else None

    def serve_forever(self) -> None:
        if self.socket is None:
            self.bind()
        log.info("[START] Gemini capsule listening on %s", self.listening_location)
        while not self._closing.is_set():
            try:
                client, addr = self.socket.accept()
            except OSError as e:
                if self._closing.is_set():
                    break
                log.error("[ACCEPT ERROR] %s", e)
                continue
            t = threading.Thread(target=self.handle, args=(client, addr), daemon=True)
            t.start()

    def shutdown(self) -> None:
        self._closing.set()
        if self.socket is not None:
            try:
                self.socket.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self.socket.close()

    def handle(self, client: socket.socket, addr) -> None:
        ssl_conn = SSL.Connection(self.context, client)
        ssl_conn.set_accept_state()
        try:
            try:
                raw = recv_request(ssl_conn, client, self.timeout)
            except (SSL.Error, OSError) as e:
                # Handshake failure, timeout or reset: nothing can be sent back
                log.debug("[SSL ERROR] %s from %s", e, addr)
                return
            conn = TimedConnection(ssl_conn, client, self.timeout)
            try:
                handle_request(conn, raw, self.hosts, self.resolver, addr)
            except (SSL.Error, OSError) as e:
                log.debug("[SSL ERROR] %s while answering %s", e, addr)
            except Exception:
                log.exception("[ERROR] Unexpected failure answering %s", addr)
                try:
                    gem_send(conn, Status.PERMANENT_FAILURE, "Server failure")
                except (SSL.Error, OSError):
                    pass
        finally:
            try:
                ssl_conn.shutdown()
            except (SSL.Error, OSError):
                pass
            client.close()
