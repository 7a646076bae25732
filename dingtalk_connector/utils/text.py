"""Text helpers: reply chunking and markdown sniffing."""

from __future__ import annotations

import re
from functools import lru_cache

DEFAULT_MARKDOWN_SIGNAL = r"^[#*>-]|[*_`#\[\]]"

_TITLE_STRIP_RE = re.compile(r"^[#*\s\->]+")


@lru_cache(maxsize=8)
def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


def looks_like_markdown(text: str, pattern: str = DEFAULT_MARKDOWN_SIGNAL) -> bool:
    """True when *text* carries markdown signal characters or a line break."""
    if not text:
        return False
    return "\n" in text or bool(_compile(pattern).search(text))


def markdown_title(text: str, fallback: str = "Message") -> str:
    """Short card/markdown title derived from the first line of *text*."""
    first = (text or "").split("\n", 1)[0]
    return _TITLE_STRIP_RE.sub("", first)[:20] or fallback


def _split_by_length(text: str, limit: int) -> list[str]:
    """Hard-split on *limit*, preferring the last newline or space in the window."""
    chunks: list[str] = []
    rest = text
    while len(rest) > limit:
        window = rest[:limit]
        cut = window.rfind("\n")
        if cut <= 0:
            cut = window.rfind(" ")
        if cut <= 0:
            cut = limit
        piece = rest[:cut].rstrip()
        if piece:
            chunks.append(piece)
        rest = rest[cut:].lstrip()
    if rest.strip():
        chunks.append(rest)
    return chunks


def chunk_text(text: str, limit: int, mode: str = "length") -> list[str]:
    """Split a reply into chunks no longer than *limit*.

    Modes:
    - ``length``: fill each chunk up to the limit, breaking on whitespace.
    - ``newline``: one chunk per paragraph (blank-line separated); a
      paragraph longer than the limit is length-split.
    """
    stripped = (text or "").strip()
    if not stripped:
        return []

    if mode == "newline":
        chunks: list[str] = []
        for para in re.split(r"\n{2,}", stripped):
            para = para.strip()
            if not para:
                continue
            if limit > 0 and len(para) > limit:
                chunks.extend(_split_by_length(para, limit))
            else:
                chunks.append(para)
        return chunks

    if limit <= 0 or len(stripped) <= limit:
        return [stripped]
    return _split_by_length(stripped, limit)
