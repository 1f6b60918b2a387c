"""
Lexical helpers: tokenization, Jaccard similarity and keyword normalization.

Tokens are lower-cased whitespace-separated words after punctuation is
stripped. Text outside the basic Latin range (CJK and other dense scripts)
has no reliable word boundaries, so every overlapping 2-character window
over those characters is added as an extra token.
"""

from __future__ import annotations

import re
from typing import Iterable, List, Optional, Set

_PUNCT_RE = re.compile(r"[^\w\s]|_", re.UNICODE)


def _is_dense(ch: str) -> bool:
    return ord(ch) > 0x7F and not ch.isspace()


def tokenize(text: Optional[str]) -> Set[str]:
    normalized = _PUNCT_RE.sub(" ", str(text or "").lower())
    tokens = set(normalized.split())

    dense = [ch for ch in normalized if _is_dense(ch)]
    for i in range(len(dense) - 1):
        tokens.add(dense[i] + dense[i + 1])

    return tokens


def similarity(a: Set[str], b: Set[str]) -> float:
    """Jaccard index of two token sets (0.0 when either is empty)."""
    if not a or not b:
        return 0.0
    union = len(a | b)
    if union == 0:
        return 0.0
    return float(len(a & b)) / float(union)


def normalize_keywords(raw: Optional[Iterable[object]]) -> List[str]:
    """Trim, lower-case, drop empties and dedupe. Order is first-seen but not guaranteed."""
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = [raw]

    seen: Set[str] = set()
    out: List[str] = []
    for item in raw:
        if item is None:
            continue
        norm = str(item).strip().lower()
        if norm and norm not in seen:
            seen.add(norm)
            out.append(norm)
    return out
