"""Whitespace and control-character normalization for email text."""

from __future__ import annotations

import re

_CONTROL_CHARS = re.compile(r"[\x00-\x09\x0b-\x1f\x7f]")
_SPACE_RUNS = re.compile(r" {2,}")
_SPACE_AROUND_NEWLINE = re.compile(r" *\n *")
_BLANK_LINE_RUNS = re.compile(r"\n{3,}")


def normalize(raw: str | None) -> str:
    """Return ``raw`` with canonical line endings and collapsed whitespace.

    Line endings become ``\\n``, tabs and space runs collapse to a single
    space, spaces next to a newline are dropped, three or more newlines
    collapse to two, and ASCII control characters are removed. Non-ASCII
    content is left as is.
    """
    if not raw:
        return ""

    text = raw.replace("\r\n", "\n").replace("\r", "\n")
    text = text.replace("\t", " ")
    text = _CONTROL_CHARS.sub("", text)
    text = _SPACE_RUNS.sub(" ", text)
    text = _SPACE_AROUND_NEWLINE.sub("\n", text)
    text = _BLANK_LINE_RUNS.sub("\n\n", text)
    return text.strip()
