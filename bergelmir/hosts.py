import re
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Tuple
from urllib.parse import urlsplit

from .config import GEMINI_DEFAULT_PORT

# "<protocol>:<location>", protocol is optional and defaults to tcp
LOCATION_RE = re.compile(r"^(?:(?i:(tcp|udp|unix)):)?(.*)$", re.DOTALL)

FALLBACK_DOMAIN = "localhost"


def parse_location(location: str) -> Tuple[str, str]:
    """Split a listening location into (protocol, address)."""
    m = LOCATION_RE.match(location)
    protocol = (m.group(1) or "tcp").lower()
    return protocol, m.group(2)


def split_host_port(address: str) -> Tuple[str, Optional[int]]:
    # "127.0.0.1:1965", "[::1]:1965", ":1965" or a bare port from `init`
    if address.isdigit():
        return "", int(address)
    parts = urlsplit("//" + address)
    try:
        port = parts.port
    except ValueError:
        port = None
    return parts.hostname or "", port


def build_domain_set(
    domain_names: Iterable[str], onion_address: Optional[str] = None
) -> Tuple[str, ...]:
    """
    Ordered, de-duplicated hostnames this capsule answers to.

    `localhost` stands in when nothing is configured; the onion address is
    appended last when Tor is enabled.
    """
    domains = []
    for name in domain_names:
        name = name.strip().lower()
        if name and name not in domains:
            domains.append(name)
    if not domains:
        domains.append(FALLBACK_DOMAIN)
    if onion_address:
        onion_address = onion_address.lower()
        if onion_address not in domains:
            domains.append(onion_address)
    return tuple(domains)


class VirtualHostTable:
    """
    Read-only mapping of hostname -> port that requests for it must carry.

    The onion hostname always maps to the Tor virtual port, every other host
    to the port of the plain listening address.
    """

    def __init__(self, ports: Mapping[str, int]):
        self._ports = MappingProxyType({k.lower(): v for k, v in ports.items()})

    @classmethod
    def build(
        cls,
        domains: Iterable[str],
        listening_location: str,
        onion_address: Optional[str] = None,
        tor_virtual_port: int = GEMINI_DEFAULT_PORT,
    ) -> "VirtualHostTable":
        protocol, address = parse_location(listening_location)
        listen_port = None
        if protocol != "unix":
            _, listen_port = split_host_port(address)
        if listen_port is None:
            # unix sockets sit behind something answering on the default port
            listen_port = GEMINI_DEFAULT_PORT

        onion = onion_address.lower() if onion_address else None
        ports = {}
        for host in domains:
            host = host.lower()
            ports[host] = tor_virtual_port if host == onion else listen_port
        return cls(ports)

    def port_for(self, hostname: str) -> Optional[int]:
        return self._ports.get(hostname.lower())

    def __contains__(self, hostname) -> bool:
        return hostname.lower() in self._ports

    def __iter__(self):
        return iter(self._ports)

    def __len__(self) -> int:
        return len(self._ports)

    def as_dict(self) -> dict:
        return dict(self._ports)
