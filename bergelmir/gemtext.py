import enum
import html
from dataclasses import dataclass
from typing import Iterator, Tuple
from urllib.parse import urlsplit

from .utils import guess_mimetype

# "" is a link relative to the current page
SAFE_LINK_SCHEMES = ("", "gemini", "http", "https", "gopher", "mailto")


class LineType(enum.Enum):
    TEXT = "text"
    LINK = "link"
    PREFORMATTED_TOGGLE = "preformatted toggle"
    PREFORMATTED_TEXT = "preformatted text"
    HEADING = "heading"
    LIST_ITEM = "list item"
    QUOTE = "quote"


@dataclass
class GemtextLine:
    type: LineType
    text: str = ""
    path: str = ""
    alt_text: str = ""
    level: int = 0


def parse_line(line: str, preformatted: bool = False) -> GemtextLine:
    if preformatted:
        if line.startswith("```"):
            return GemtextLine(LineType.PREFORMATTED_TOGGLE)
        return GemtextLine(LineType.PREFORMATTED_TEXT, text=line)

    if line.startswith("```"):
        return GemtextLine(LineType.PREFORMATTED_TOGGLE, alt_text=line[3:].strip())
    if line.startswith("####"):
        return GemtextLine(LineType.TEXT, text=line.strip())
    for level in (3, 2, 1):
        if line.startswith("#" * level):
            return GemtextLine(LineType.HEADING, text=line[level:].strip(), level=level)
    if line.startswith("* "):
        return GemtextLine(LineType.LIST_ITEM, text=line[2:].strip())
    if line.startswith("=> ") or line.startswith("=>\t"):
        g = GemtextLine(LineType.LINK)
        fields = line[3:].split()
        if fields:
            g.path = fields[0]
            g.text = line[3:].strip()[len(fields[0]):].strip()
        return g
    if line.startswith(">"):
        return GemtextLine(LineType.QUOTE, text=line[1:].strip())
    return GemtextLine(LineType.TEXT, text=line.strip())


def iter_lines(gmi: str) -> Iterator[Tuple[GemtextLine, bool]]:
    """Classify each line, yielding it with the preformatted state it opened in."""
    preformatted = False
    for line in gmi.replace("\r\n", "\n").split("\n"):
        g = parse_line(line, preformatted)
        yield g, preformatted
        if g.type is LineType.PREFORMATTED_TOGGLE:
            preformatted = not preformatted


def escape(text: str) -> str:
    return html.escape(text, quote=True)


def _link_to_html(g: GemtextLine) -> str:
    parts = urlsplit(g.path)
    unsafe = any(ord(c) < 0x20 or ord(c) == 0x7F for c in g.path)
    if unsafe or parts.scheme.lower() not in SAFE_LINK_SCHEMES:
        # javascript:, data: and the like never become a live href
        label = escape(g.text) if g.text else escape(g.path)
        return f"<p>{label} ({escape(g.path)})</p>\n"
    scheme_text = " [Gemini Protocol Link]" if parts.scheme == "gemini" else ""
    target = ' target="_blank"' if parts.netloc else ""
    if not parts.scheme and not parts.netloc and guess_mimetype(g.path).startswith("image/"):
        return (
            '<div class="img-container">'
            f'<img src="{escape(g.path)}" alt="{escape(g.text)}" title="{escape(g.text)}"/>'
            "</div>\n"
        )
    label = escape(g.text) if g.text else escape(g.path)
    return f'<a href="{escape(g.path)}"{target}>{label}</a>{scheme_text}<br />\n'


def to_html(gmi: str, default_title: str = "") -> Tuple[str, str]:
    """Render Gemtext as an HTML fragment, returning (html, page title)."""
    title = None
    out = ['<div id="content">\n']
    for g, preformatted in iter_lines(gmi):
        if g.type is LineType.HEADING:
            out.append(f"<h{g.level}>{escape(g.text)}</h{g.level}>\n")
            if g.level == 1 and title is None:
                title = g.text
        elif g.type is LineType.LIST_ITEM:
            out.append(f"<li>{escape(g.text)}</li>\n")
        elif g.type is LineType.QUOTE:
            out.append(f"<blockquote>{escape(g.text)}</blockquote>\n")
        elif g.type is LineType.TEXT:
            out.append(f"<p>{escape(g.text)}</p>\n" if g.text else "<br />\n")
        elif g.type is LineType.PREFORMATTED_TOGGLE:
            if not preformatted:
                alt = escape(g.alt_text)
                out.append(f'<pre aria-label="{alt}" title="{alt}"><code>')
            else:
                if out[-1].endswith("\n"):
                    out[-1] = out[-1][:-1]
                out.append("</code></pre>\n")
        elif g.type is LineType.PREFORMATTED_TEXT:
            out.append(f"{escape(g.text)}\n")
        elif g.type is LineType.LINK:
            out.append(_link_to_html(g))
    out.append("</div>")
    return "".join(out), escape(title if title is not None else default_title)
