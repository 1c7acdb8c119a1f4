"""
HTTP gateway: the capsule's Gemtext pages re-presented as HTML.
"""

import logging
import os
import re
import threading
from typing import Optional

from flask import Flask, Response, abort, request, send_from_directory
from werkzeug.exceptions import NotFound
from werkzeug.serving import make_server

from .config import Config, HTTP_DEFAULT_PORT
from .content import ContentResolver, normalize_path
from .exceptions import ListenerError
from .gemtext import to_html
from .hosts import parse_location, split_host_port
from .rss import FEED_MIMETYPE

log = logging.getLogger(__name__)

GEMINI_CONTENT_RE = re.compile(r"^\s*%GEMINI_CONTENT%", re.MULTILINE)
TITLE_RE = re.compile(r"%TITLE%")
PAGE_EXTENSIONS = (".gmi", ".gemini", ".html")


def render_layout(layout: str, title: str, content: str) -> str:
    layout = TITLE_RE.sub(lambda _: title, layout)
    return GEMINI_CONTENT_RE.sub(lambda _: content, layout)


def create_app(config: Config, resolver: Optional[ContentResolver] = None) -> Flask:
    app = Flask(__name__)
    resolver = resolver or ContentResolver(config.gemini.data_path, config.rss)

    def serve_file(path: str):
        for root in (config.gemini.data_path, config.http.data_path):
            try:
                return send_from_directory(os.path.abspath(root), path.lstrip("/"))
            except NotFound:
                continue
        abort(404)

    @app.route("/", defaults={"path": ""})
    @app.route("/<path:path>")
    def catch_all(path):
        page_path, extension = normalize_path("/" + path, PAGE_EXTENSIONS)
        if extension:
            return serve_file(page_path)

        if resolver.is_feed(page_path):
            base = request.host_url.rstrip("/")
            return Response(resolver.feed(base), mimetype=FEED_MIMETYPE)

        filesystem_path = resolver.filesystem_path(page_path)
        if filesystem_path is None:
            abort(404)
        gmi = resolver.read_page(filesystem_path)
        if gmi is None:
            abort(404)
        content, title = to_html(
            gmi.decode("utf-8", "replace"), config.http.default_page_title
        )
        try:
            with open(config.http.layout_html_path, "r", encoding="utf-8") as f:
                layout = f.read()
        except OSError:
            log.error("[HTTP] Unable to read layout HTML file %s", config.http.layout_html_path)
            abort(500)
        return Response(render_layout(layout, title, content), mimetype="text/html")

    return app


class HTTPGateway:
    def __init__(self, config: Config, resolver: Optional[ContentResolver] = None):
        self.listening_location = config.http.listening_location
        self.app = create_app(config, resolver)
        self.server = None
        self._thread: Optional[threading.Thread] = None

    def bind(self):
        protocol, address = parse_location(self.listening_location)
        if protocol == "unix":
            host, port = f"unix://{address}", 0
        elif protocol == "tcp":
            host, port = split_host_port(address)
            host = host or "0.0.0.0"
            port = HTTP_DEFAULT_PORT if port is None else port
        else:
            raise ListenerError(
                "HTTP requires a stream socket, udp is not supported",
                {"location": self.listening_location},
            )
        try:
            self.server = make_server(host, port, self.app, threaded=True)
        except (OSError, SystemExit) as e:
            raise ListenerError("Unable to start HTTP server") from e
        return self.server

    def start(self) -> None:
        if self.server is None:
            self.bind()
        log.info("[HTTP] Listening on %s", self.listening_location)
        self._thread = threading.Thread(
            target=self.server.serve_forever, name="http-gateway", daemon=True
        )
        self._thread.start()

    def shutdown(self) -> None:
        if self.server is not None:
            self.server.shutdown()
            self.server.server_close()
