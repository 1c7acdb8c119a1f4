"""
Gemini request validation.

A request is a single line, `<absolute URL><CR><LF>`, at most 1024 bytes
before the terminator. `parse_request` turns the bytes read from one
connection into a GeminiRequest or raises RequestError carrying the status
line to answer with (or none, when the connection is to be dropped).
"""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote, urlsplit

from .config import GEMINI_DEFAULT_PORT, MAX_REQUEST_BYTES
from .hosts import VirtualHostTable


class Status:
    """
    Gemini response status codes.
    """

    INPUT = 10
    SENSITIVE_INPUT = 11

    SUCCESS = 20

    REDIRECT_TEMPORARY = 30
    REDIRECT_PERMANENT = 31

    TEMPORARY_FAILURE = 40
    SERVER_UNAVAILABLE = 41
    CGI_ERROR = 42
    PROXY_ERROR = 43
    SLOW_DOWN = 44

    PERMANENT_FAILURE = 50
    NOT_FOUND = 51
    GONE = 52
    PROXY_REQUEST_REFUSED = 53
    BAD_REQUEST = 59

    CLIENT_CERTIFICATE_REQUIRED = 60
    CERTIFICATE_NOT_AUTHORISED = 61
    CERTIFICATE_NOT_VALID = 62


class RequestError(Exception):
    """
    A request that must not reach content dispatch.

    `status` is None when the line cannot be trusted at all and the
    connection is closed without a response.
    """

    def __init__(self, status: Optional[int], meta: str = ""):
        self.status = status
        self.meta = meta
        super().__init__(f"{status} {meta}" if status is not None else "dropped")


def _drop() -> RequestError:
    return RequestError(None)


def _invalid() -> RequestError:
    return RequestError(Status.BAD_REQUEST, "Invalid Request")


def _refused(meta: str) -> RequestError:
    return RequestError(Status.PROXY_REQUEST_REFUSED, meta)


@dataclass(frozen=True)
class GeminiRequest:
    url: str
    scheme: str
    hostname: str
    port: int
    path: str
    query: str = ""


def _has_control_chars(text: str) -> bool:
    return any(ord(c) < 0x20 or ord(c) == 0x7F for c in text)


def escapes_root(path: str) -> bool:
    """True when some prefix of `path` climbs above the virtual root."""
    depth = 0
    for segment in path.split("/"):
        if segment == "..":
            depth -= 1
            if depth < 0:
                return True
        elif segment not in ("", "."):
            depth += 1
    return False


def parse_request(raw: bytes, hosts: VirtualHostTable) -> GeminiRequest:
    terminated = len(raw) >= 2 and raw.find(b"\r\n") == len(raw) - 2

    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        if not terminated:
            raise _drop() from None
        raise _invalid() from None

    if not terminated:
        raise _drop()
    if len(raw) - 2 > MAX_REQUEST_BYTES:
        raise _invalid()

    url = text[:-2]
    if url.startswith("\ufeff"):
        raise _invalid()

    if _has_control_chars(url):
        raise _invalid()
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        raise _invalid() from None
    if not parts.scheme or not parts.hostname:
        raise _invalid()

    path = unquote(parts.path)
    if "\x00" in path or escapes_root(path):
        raise _invalid()

    if parts.scheme.lower() != "gemini":
        raise _refused("Invalid Scheme")

    expected_port = hosts.port_for(parts.hostname)
    if expected_port is None:
        raise _refused("Invalid Host")
    if port is None:
        port = GEMINI_DEFAULT_PORT
    if port != expected_port:
        raise _refused("Invalid Port")

    return GeminiRequest(
        url=url,
        scheme=parts.scheme.lower(),
        hostname=parts.hostname,
        port=port,
        path=path,
        query=parts.query,
    )
