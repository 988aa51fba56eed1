"""
Shared tokenization helpers for lexical retrieval.
"""
from __future__ import annotations

import re

# Characters outside these script ranges act as token separators.
_NON_TOKEN_RE = re.compile(r"[^a-z0-9\u00C0-\u024F\u4E00-\u9FFF\uAC00-\uD7AF\s]+")


def tokenize_for_retrieval(text: str, *, min_len: int = 2, limit: int | None = None) -> list[str]:
    """
    Lowercases text, replaces unsupported characters with spaces and splits on whitespace.
    Tokens shorter than ``min_len`` are dropped.
    """
    safe_min_len = max(1, int(min_len))
    max_tokens = int(limit) if limit is not None else None

    cleaned = _NON_TOKEN_RE.sub(" ", str(text or "").lower())
    out: list[str] = []
    for token in cleaned.split():
        if len(token) < safe_min_len:
            continue
        out.append(token)
        if max_tokens is not None and len(out) >= max_tokens:
            break
    return out


def unique_tokens(tokens: list[str]) -> list[str]:
    """Deduplicates while keeping first-occurrence order."""
    return list(dict.fromkeys(tokens))
