"""
Snippet construction for search results
"""

import html

from .config import ELLIPSIS


def escape_html(text: str) -> str:
    """Escape & < > " ' for safe embedding in HTML."""
    return html.escape(text, quote=True).replace("&#x27;", "&#39;")


def _window(text_length: int, start: int, end: int, radius: int):
    return max(0, start - radius), min(text_length, end + radius)


def build_snippet_html(text: str, start: int, end: int, radius: int = 50,
                       highlight_open: str = "<mark>",
                       highlight_close: str = "</mark>",
                       ellipsis: str = ELLIPSIS) -> str:
    """
    Build an HTML snippet around the match ``text[start:end]``.

    Context and match are escaped separately; only the highlight markers are
    emitted as markup.
    """
    a, b = _window(len(text), start, end, radius)
    before = escape_html(text[a:start])
    hit = escape_html(text[start:end])
    after = escape_html(text[end:b])
    prefix = ellipsis if a > 0 else ""
    suffix = ellipsis if b < len(text) else ""
    return f"{prefix}{before}{highlight_open}{hit}{highlight_close}{after}{suffix}"


def build_plain_snippet(text: str, start: int, end: int, radius: int = 90,
                        ellipsis: str = ELLIPSIS) -> str:
    """Plain-text context window around a match, without highlighting."""
    a, b = _window(len(text), start, end, radius)
    prefix = ellipsis if a > 0 else ""
    suffix = ellipsis if b < len(text) else ""
    return prefix + text[a:b] + suffix
