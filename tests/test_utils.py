import socket

import pytest
from OpenSSL import SSL

from bergelmir.utils import TimedConnection, gem_send, is_within, read_gemtext


class TrickleConnection:
    """pyOpenSSL stand-in accepting at most `step` bytes per send()."""

    def __init__(self, step=3, stalled=False):
        self.step = step
        self.stalled = stalled
        self.sent = b""

    def send(self, data):
        if self.stalled:
            raise SSL.WantWriteError()
        chunk = bytes(data[: self.step])
        self.sent += chunk
        return len(chunk)


@pytest.fixture
def sock():
    a, b = socket.socketpair()
    yield a
    a.close()
    b.close()


def test_timed_connection_writes_everything(sock):
    ssl_conn = TrickleConnection()
    gem_send(TimedConnection(ssl_conn, sock, timeout=1), 20, "text/gemini", b"# Hello\n")
    assert ssl_conn.sent == b"20 text/gemini\r\n# Hello\n"


def test_timed_connection_gives_up_on_stalled_client(sock):
    conn = TimedConnection(TrickleConnection(stalled=True), sock, timeout=0.2)
    with pytest.raises(socket.timeout):
        conn.sendall(b"20 text/gemini\r\n")


def test_is_within(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    assert is_within(str(root), str(root / "page.gmi"))
    assert not is_within(str(root), str(root / ".." / "page.gmi"))
    assert not is_within(str(root), str(root))


def test_read_gemtext_skips_files_outside_root(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    (tmp_path / "secret.gmi").write_bytes(b"secret")
    (root / "secret.gmi").symlink_to(tmp_path / "secret.gmi")
    assert read_gemtext(str(root / "secret")) == b"secret"
    assert read_gemtext(str(root / "secret"), str(root)) is None
