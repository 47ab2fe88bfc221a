from __future__ import annotations

from selectolax.parser import HTMLParser

from baitbreaker.utils import collapse_ws


_CONTENT_SELECTORS = [
    "article",
    "main",
    ".article-content",
    ".post-content",
    ".entry-content",
    "#content",
]


def extract_main_text(html: str) -> str:
    """Plain article text: the first content container that matches, else the body."""
    tree = HTMLParser(html)

    # Remove some noise
    for node in tree.css("script, style, noscript"):
        node.decompose()

    for selector in _CONTENT_SELECTORS:
        node = tree.css_first(selector)
        if node is None:
            continue
        text = collapse_ws(node.text(separator=" "))
        if text:
            return text

    body = tree.body
    if body is not None:
        return collapse_ws(body.text(separator=" "))
    return collapse_ws(tree.text(separator=" "))
