import logging
import os
import posixpath
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple, Union

from .config import RSSConfig
from .rss import FEED_MIMETYPE, create_feed
from .utils import GEMTEXT_EXTENSIONS, guess_mimetype, is_within, read_gemtext

log = logging.getLogger(__name__)

GEMTEXT_MIMETYPE = "text/gemini"
FEED_PATHS = ("/feed", "/rss")
CHUNK_SIZE = 64 * 1024


@dataclass
class Content:
    mimetype: str
    body: Union[bytes, Iterator[bytes]]


def normalize_path(url_path: str, page_extensions=GEMTEXT_EXTENSIONS) -> Tuple[str, str]:
    """
    Map a request path to (page path, extension).

    A trailing slash is dropped, page extensions count as no extension and
    the empty path is the index page.
    """
    if url_path.endswith("/"):
        url_path = url_path[:-1]
    extension = posixpath.splitext(url_path)[1]
    if extension in page_extensions:
        url_path = url_path[: -len(extension)]
        extension = ""
    if url_path == "":
        url_path = "/index"
    return url_path, extension


def load_file(f) -> Iterator[bytes]:
    with f:
        while True:
            data = f.read(CHUNK_SIZE)
            if not data:
                break
            yield data


class ContentResolver:
    """
    Static capsule content below `data_path`.

    Every filesystem path it hands out resolves below `data_path`; anything
    else is reported as not found.
    """

    def __init__(self, data_path: str, rss: Optional[RSSConfig] = None):
        self.data_path = data_path
        self.rss = rss or RSSConfig()

    def filesystem_path(self, page_path: str) -> Optional[str]:
        candidate = os.path.join(self.data_path, page_path.lstrip("/"))
        if not is_within(self.data_path, candidate):
            log.warning("[REJECT] %s resolves outside %s", page_path, self.data_path)
            return None
        return candidate

    def is_feed(self, page_path: str) -> bool:
        return self.rss.enabled and page_path in FEED_PATHS

    def feed(self, base_url: str) -> str:
        return create_feed(self.data_path, self.rss.feed_source_gemini_path, base_url)

    def resolve(self, url_path: str, base_url: str) -> Optional[Content]:
        page_path, extension = normalize_path(url_path)
        if self.is_feed(page_path):
            return Content(FEED_MIMETYPE, self.feed(base_url).encode("utf-8"))
        path = self.filesystem_path(page_path)
        if path is None:
            return None
        if extension:
            return self.open_file(path)
        data = self.read_page(path)
        if data is None:
            return None
        return Content(GEMTEXT_MIMETYPE, data)

    def read_page(self, path: str) -> Optional[bytes]:
        return read_gemtext(path, self.data_path)

    def open_file(self, path: str) -> Optional[Content]:
        if not is_within(self.data_path, path) or not os.path.isfile(path):
            return None
        try:
            f = open(path, "rb")
        except OSError as e:
            log.warning("[ERROR] Unable to open %s: %s", path, e)
            return None
        return Content(guess_mimetype(path), load_file(f))
