import os
import re
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlsplit

from .gemtext import LineType, escape, iter_lines
from .utils import read_gemtext

FEED_MIMETYPE = "application/rss+xml"

# "=> /posts/hello.gmi 2024-05-01 - Hello"
FEED_ENTRY_RE = re.compile(r"(\d{4}-\d{2}-\d{2})\s(?:[-–—―‖:|]\s)(.*)")


@dataclass
class FeedEntry:
    title: str
    link: str
    updated: str


def join_url(base: str, elem: str) -> str:
    return base.rstrip("/") + "/" + elem.lstrip("/")


def parse_feed_entry(text: str) -> Optional[FeedEntry]:
    m = FEED_ENTRY_RE.search(text)
    if not m:
        return None
    return FeedEntry(title=escape(m.group(2)), link="", updated=m.group(1) + "T12:00:00Z")


def translate_to_feed(gmi: str, base_url: str, source_path: str) -> str:
    """Build an Atom document from the dated links of a Gemtext page."""
    feed_url = join_url(base_url, source_path)
    title = ""
    entries: List[FeedEntry] = []
    for g, _ in iter_lines(gmi):
        if g.type is LineType.HEADING and g.level == 1 and not title:
            title = escape(g.text)
        elif g.type is LineType.LINK:
            entry = parse_feed_entry(g.text)
            if entry is None:
                continue
            if urlsplit(g.path).scheme:
                entry.link = escape(g.path)
            else:
                entry.link = escape(join_url(base_url, g.path))
            entries.append(entry)

    if not entries:
        return ""
    entries.sort(key=lambda e: e.updated, reverse=True)

    out = [
        '<?xml version="1.0" encoding="utf-8"?>\n'
        '<feed xmlns="http://www.w3.org/2005/Atom">\n\n'
        f"  <title>{title}</title>\n"
        f'  <link href="{escape(feed_url)}"/>\n'
        f"  <updated>{entries[0].updated}</updated>\n"
        f"  <id>{escape(feed_url)}</id>\n\n"
    ]
    for entry in entries:
        out.append(
            "  <entry>\n"
            f"    <title>{entry.title}</title>\n"
            f'    <link rel="alternate" href="{entry.link}"/>\n'
            f"    <id>{entry.link}</id>\n"
            f"    <updated>{entry.updated}</updated>\n"
            "  </entry>\n\n"
        )
    out.append("</feed>")
    return "".join(out)


def create_feed(data_path: str, source_path: str, base_url: str) -> str:
    gmi = read_gemtext(os.path.join(data_path, source_path.lstrip("/")))
    if gmi is None:
        return ""
    return translate_to_feed(gmi.decode("utf-8", "replace"), base_url, source_path)
