"""HTML-to-text extraction for message bodies that carry no plain-text part."""

from __future__ import annotations

import re

import structlog
from bs4 import BeautifulSoup
from bs4.element import Tag

from email_search_agent.text.normalizer import normalize

logger = structlog.get_logger()

_DROP_TAGS = ["script", "style", "head", "noscript", "template", "title", "meta", "link"]
_BLOCK_TAGS = [
    "p", "div", "br", "tr", "li", "ul", "ol", "table", "h1", "h2", "h3", "h4", "h5", "h6",
    "blockquote", "pre", "section", "article", "header", "footer", "hr",
]
_TAG_RE = re.compile(r"<[^>]+>")
_HIDDEN_STYLE = re.compile(r"display\s*:\s*none|visibility\s*:\s*hidden", re.IGNORECASE)


def _is_tracking_pixel(tag: Tag) -> bool:
    return str(tag.get("width", "")).strip() in {"0", "1"} and str(
        tag.get("height", "")
    ).strip() in {"0", "1"}


def _is_hidden(tag: Tag) -> bool:
    if tag.has_attr("hidden") or str(tag.get("aria-hidden", "")).lower() == "true":
        return True
    return bool(_HIDDEN_STYLE.search(str(tag.get("style", ""))))


def html_to_text(html: str | None) -> str:
    """Extract readable, normalized text from an HTML body."""
    if not html:
        return ""

    try:
        soup = BeautifulSoup(html, "html.parser")
        for tag in soup(_DROP_TAGS):
            tag.decompose()
        for img in soup.find_all("img"):
            if _is_tracking_pixel(img):
                img.decompose()
        for tag in soup.find_all(True):
            if tag.decomposed:
                continue
            if _is_hidden(tag):
                tag.decompose()
        for tag in soup.find_all(_BLOCK_TAGS):
            tag.insert_before("\n")
            tag.insert_after("\n")
        text = soup.get_text()
    except Exception as e:
        logger.warning("html_parse_failed", error=str(e))
        text = _TAG_RE.sub(" ", html)

    return normalize(text)
