"""
Text normalization, chunking and fingerprinting for paper indexes.
"""
from __future__ import annotations

import hashlib
import re

from .config import CHUNK_OVERLAP, CHUNK_SIZE
from .models import TextChunk

_CONTROL_SPACE_RE = re.compile(r"[\t\f\v]+")
_MULTI_SPACE_RE = re.compile(r"[ ]{2,}")
_MULTI_NEWLINE_RE = re.compile(r"\n{3,}")
_HTML_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Canonical form used for hashing and chunking."""
    value = str(text or "").replace("\r", "\n")
    value = _CONTROL_SPACE_RE.sub(" ", value)
    value = value.replace("\u0000", "")
    value = _MULTI_SPACE_RE.sub(" ", value)
    value = _MULTI_NEWLINE_RE.sub("\n\n", value)
    return value.strip()


def strip_html(text: str) -> str:
    return normalize_text(_HTML_TAG_RE.sub(" ", str(text or "")))


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", str(text or "").replace("\u0000", "")).strip()


def clip_text(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars].strip()}..."


def hash_text(text: str) -> str:
    return hashlib.sha256(str(text or "").encode("utf-8")).hexdigest()[:20]


def chunk_text(text: str, *, chunk_size: int = CHUNK_SIZE, overlap: int = CHUNK_OVERLAP) -> list[TextChunk]:
    """
    Splits normalized text into overlapping fixed-size windows.

    ``start``/``end`` are the raw window offsets; ``text`` is the trimmed window.
    Windows that are blank after trimming are skipped; ids stay consecutive.
    """
    if not text:
        return []

    size = max(1, int(chunk_size))
    step_overlap = min(max(0, int(overlap)), size - 1)
    chunks: list[TextChunk] = []
    start = 0
    length = len(text)

    while start < length:
        end = min(length, start + size)
        window = text[start:end].strip()
        if window:
            chunks.append(TextChunk(id=f"chunk-{len(chunks) + 1}", text=window, start=start, end=end))
        if end >= length:
            break
        start = max(start + 1, end - step_overlap)

    return chunks
