import os

import pytest

from bergelmir.config import Config, RSSConfig
from bergelmir.content import ContentResolver
from bergelmir.hosts import VirtualHostTable


class FakeConnection:
    """Collects what the server writes to a client."""

    def __init__(self):
        self.sent = b""

    def sendall(self, data):
        self.sent += data


@pytest.fixture
def conn():
    return FakeConnection()


@pytest.fixture
def capsule_root(tmp_path):
    gemini = tmp_path / "gemini"
    (gemini / "blog").mkdir(parents=True)
    (gemini / "index.gmi").write_bytes(b"# Home\n\nWelcome.\n")
    (gemini / "about.gemini").write_bytes(b"# About\n")
    (gemini / "image.png").write_bytes(b"\x89PNG\r\n\x1a\nnot really")
    (gemini / "blog.gmi").write_bytes(
        b"# My Blog\n"
        b"=> /blog/first.gmi 2023-01-02 - First post\n"
        b"=> /blog/second.gmi 2024-05-01 - Second post\n"
        b"=> /about not a dated link\n"
    )
    (gemini / "blog" / "first.gmi").write_bytes(b"# First\n")
    http = tmp_path / "http"
    http.mkdir()
    (http / "layout.html").write_text(
        "<html><head><title>%TITLE%</title></head>\n<body>\n  %GEMINI_CONTENT%\n</body></html>\n"
    )
    (http / "style.css").write_text("body { color: black; }\n")
    return tmp_path


@pytest.fixture
def config(capsule_root):
    config = Config()
    config.gemini.domain_names = ["example.org"]
    config.gemini.data_path = os.path.join(str(capsule_root), "gemini")
    config.gemini.tls.cert_path = os.path.join(str(capsule_root), "tls", "cert.pem")
    config.gemini.tls.key_path = os.path.join(str(capsule_root), "tls", "cert.key")
    config.http.enabled = True
    config.http.data_path = os.path.join(str(capsule_root), "http")
    config.http.layout_html_path = os.path.join(str(capsule_root), "http", "layout.html")
    config.http.default_page_title = "Capsule"
    config.rss = RSSConfig(enabled=True, feed_source_gemini_path="blog")
    return config


@pytest.fixture
def resolver(config):
    return ContentResolver(config.gemini.data_path, config.rss)


@pytest.fixture
def hosts():
    return VirtualHostTable.build(["example.org", "localhost"], "127.0.0.1:1965")
