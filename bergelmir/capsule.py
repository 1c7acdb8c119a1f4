import logging
import signal
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .config import GEMINI_DEFAULT_PORT, HTTP_DEFAULT_PORT, Config
from .content import ContentResolver
from .gateway import HTTPGateway
from .hosts import VirtualHostTable, build_domain_set
from .server import GeminiServer
from .tls import Certificate, load_or_create_certificate
from .tor import OnionPort, TorControlClient, TorProcess, read_control_address

log = logging.getLogger(__name__)


@dataclass
class StartupContext:
    """Values resolved once during start-up, read-only once serving begins."""

    onion_address: Optional[str] = None
    domains: Tuple[str, ...] = ()
    hosts: Optional[VirtualHostTable] = None
    certificate: Optional[Certificate] = None


def onion_ports(config: Config) -> List[OnionPort]:
    ports = [OnionPort(config.gemini.tor.virtual_port, config.gemini.listening_location)]
    if config.http.enabled:
        ports.append(OnionPort(config.http.tor.virtual_port, config.http.listening_location))
    return ports


def _url(scheme: str, host: str, port: int, default_port: int) -> str:
    if port != default_port:
        return f"{scheme}://{host}:{port}"
    return f"{scheme}://{host}"


class Capsule:
    """
    Start-up sequence: Tor (optional) -> domain set -> certificate ->
    host table -> listeners. Any failure before the listeners open is fatal.
    """

    def __init__(self, config: Config):
        self.config = config
        self.context = StartupContext()
        self.resolver = ContentResolver(config.gemini.data_path, config.rss)
        self.tor_process: Optional[TorProcess] = None
        self.gemini: Optional[GeminiServer] = None
        self.http: Optional[HTTPGateway] = None
        self._stopped = threading.Event()

    def start_tor(self) -> str:
        tor = self.config.tor
        log.info("[TOR] Starting Tor")
        self.tor_process = TorProcess(tor.torrc_path)
        self.tor_process.start()
        client = TorControlClient(
            read_control_address(tor.control_port_file_path),
            tor.control_auth_cookie_path,
            tor.hidden_service_private_key_path,
            onion_ports(self.config),
            timeout=tor.control_timeout,
        )
        self.context.onion_address = client.start()
        log.info("[TOR] Tor started")
        log.info("[TOR] Tor onion address is %s", self.context.onion_address)
        return self.context.onion_address

    def prepare(self) -> StartupContext:
        gemini = self.config.gemini
        ctx = self.context
        ctx.domains = build_domain_set(gemini.domain_names, ctx.onion_address)
        ctx.certificate = load_or_create_certificate(
            gemini.tls.cert_path, gemini.tls.key_path, ctx.domains
        )
        ctx.hosts = VirtualHostTable.build(
            ctx.domains,
            gemini.listening_location,
            ctx.onion_address,
            gemini.tor.virtual_port,
        )
        return ctx

    def start(self) -> None:
        if self.config.tor.enabled:
            self.start_tor()
        ctx = self.prepare()

        self.gemini = GeminiServer(
            self.config.gemini.listening_location, ctx.certificate, ctx.hosts, self.resolver
        )
        self.gemini.bind()
        if self.config.http.enabled:
            self.http = HTTPGateway(self.config, self.resolver)
            self.http.bind()

        log.info("[START] Starting Gemini capsule at gemini://%s", self.config.gemini.listening_location)
        threading.Thread(
            target=self.gemini.serve_forever, name="gemini-server", daemon=True
        ).start()
        if ctx.onion_address:
            log.info(
                "[START] Gemini capsule is accessible over tor at %s",
                _url("gemini", ctx.onion_address, self.config.gemini.tor.virtual_port, GEMINI_DEFAULT_PORT),
            )
        if self.http is not None:
            log.info("[START] Starting HTTP server at http://%s", self.config.http.listening_location)
            self.http.start()
            if ctx.onion_address:
                log.info(
                    "[START] HTTP server is accessible over tor at %s",
                    _url("http", ctx.onion_address, self.config.http.tor.virtual_port, HTTP_DEFAULT_PORT),
                )

    def stop(self) -> None:
        if self.gemini is not None:
            self.gemini.shutdown()
        if self.http is not None:
            self.http.shutdown()
        if self.tor_process is not None:
            self.tor_process.kill()
        self._stopped.set()

    def run(self) -> None:
        """Start everything and block until SIGINT or SIGTERM."""
        def on_signal(signum, frame):
            log.info("[START] Received signal %s, shutting down", signum)
            self._stopped.set()

        signal.signal(signal.SIGINT, on_signal)
        signal.signal(signal.SIGTERM, on_signal)
        log.info("[START] Starting Bergelmir")
        try:
            self.start()
            self._stopped.wait()
        finally:
            self.stop()
