import mimetypes
import os
import select
import socket
import time
from typing import Callable, Optional, TypeVar

from OpenSSL import SSL

from .config import READ_BYTES, TIMEOUT_S

T = TypeVar("T")

DEFAULT_MIMETYPE = "application/octet-stream"
GEMTEXT_EXTENSIONS = (".gmi", ".gemini")


def ensure_file_directory(path: str) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, mode=0o700, exist_ok=True)


def write_file(path: str, content: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(content)


def is_within(root: str, path: str) -> bool:
    """True when `path`, symlinks resolved, lies below the directory `root`."""
    return os.path.realpath(path).startswith(os.path.realpath(root) + os.sep)


def read_gemtext(path: str, root: Optional[str] = None) -> Optional[bytes]:
    """
    Content of `<path>.gmi` or `<path>.gemini`, whichever exists first.

    With `root` set, files resolving outside of it are skipped.
    """
    for extension in GEMTEXT_EXTENSIONS:
        if root is not None and not is_within(root, path + extension):
            continue
        try:
            with open(path + extension, "rb") as f:
                return f.read()
        except OSError:
            continue
    return None


def guess_mimetype(path: str) -> str:
    mimetype, _ = mimetypes.guess_type(path, strict=False)
    return mimetype or DEFAULT_MIMETYPE


def _until_ready(op: Callable[[], T], sock: socket.socket, deadline: float) -> T:
    # Drive a pyOpenSSL call on a non-blocking socket until it completes or
    # the deadline passes.
    while True:
        try:
            return op()
        except SSL.WantReadError:
            readers, writers = [sock], []
        except SSL.WantWriteError:
            readers, writers = [], [sock]
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise socket.timeout("timed out")
        ready = select.select(readers, writers, [], remaining)
        if not any(ready):
            raise socket.timeout("timed out")


def recv_request(
    ssl_conn: SSL.Connection, sock: socket.socket, timeout: float = TIMEOUT_S
) -> bytes:
    """
    Finish the TLS handshake and read the request with a single read.

    Both steps share one deadline. The socket stays non-blocking; write the
    response through a TimedConnection.
    """
    deadline = time.monotonic() + timeout
    sock.setblocking(False)
    _until_ready(ssl_conn.do_handshake, sock, deadline)
    try:
        return _until_ready(lambda: ssl_conn.recv(READ_BYTES), sock, deadline)
    except SSL.ZeroReturnError:
        return b""


class TimedConnection:
    """
    sendall() over a non-blocking pyOpenSSL connection.

    Each write must make progress within `timeout` seconds, so a client that
    stops reading cannot hold the handler thread.
    """

    def __init__(self, ssl_conn: SSL.Connection, sock: socket.socket, timeout: float = TIMEOUT_S):
        self.ssl_conn = ssl_conn
        self.sock = sock
        self.timeout = timeout

    def sendall(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            deadline = time.monotonic() + self.timeout
            sent = _until_ready(lambda: self.ssl_conn.send(view), self.sock, deadline)
            view = view[sent:]


def gem_send(conn, code: int, meta: str, body: bytes = b""):
    header = f"{code} {meta}\r\n".encode("utf-8")
    payload = body.encode("utf-8") if isinstance(body, str) else body
    conn.sendall(header + payload)
