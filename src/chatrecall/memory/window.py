"""
Window selection over a conversation's non-system message positions.

select_best_window picks the fixed-size span holding the most keyword hits,
preferring the span closest to "now" when hit counts tie. It is total: any
input yields an in-range Window.
"""

from __future__ import annotations

from typing import Callable, Iterable, List, Optional, Tuple

from chatrecall.memory.models import Window


def _clean_indices(indices: Iterable[int], total: int) -> List[int]:
    out = set()
    for i in indices:
        try:
            v = int(i)
        except (TypeError, ValueError):
            continue
        if 0 <= v < total:
            out.add(v)
    return sorted(out)


def _span(start: int, total: int, n: int) -> Tuple[int, int]:
    start = max(0, min(start, total - n))
    return start, min(start + n, total)


def _scan(
    matches: List[int],
    total: int,
    n: int,
    start_for: Callable[[int], int],
) -> Tuple[int, int, int]:
    """
    Score one candidate span per match and keep the best.

    start_for must be non-decreasing in the match index so both pointers only
    move forward. Returns (hits, start, end).
    """
    best: Optional[Tuple[int, int, int]] = None
    lo = hi = 0
    for i in matches:
        start, end = _span(start_for(i), total, n)

        while lo < len(matches) and matches[lo] < start:
            lo += 1
        if hi < lo:
            hi = lo
        while hi < len(matches) and matches[hi] < end:
            hi += 1
        hits = hi - lo

        # Equal hits: the later span wins. Otherwise first reached stays.
        if best is None or hits > best[0] or (hits == best[0] and end > best[2]):
            best = (hits, start, end)

    assert best is not None
    return best


def select_best_window(matched_indices: Iterable[int], total: int, n: int) -> Window:
    """
    Choose the n-message span with the most matched positions.

    Each match proposes a span centered on itself (clamped to [0, total)).
    Centered spans are kept unless a span starting at a match strictly beats
    them, which is how clusters that no centered span covers are still found.
    Degenerate inputs return the earliest span [0, min(n, total)).
    """
    total = int(total or 0)
    n = int(n or 0)
    if total <= 0 or n <= 0:
        return Window(0, max(0, min(n, total)))

    matches = _clean_indices(matched_indices, total)
    if not matches:
        return Window(0, min(n, total))

    half = n // 2
    c_hits, c_start, c_end = _scan(matches, total, n, lambda i: i - half)
    a_hits, a_start, a_end = _scan(matches, total, n, lambda i: i)

    if a_hits > c_hits:
        return Window(a_start, a_end)
    return Window(c_start, c_end)


def window_around(pivot: int, total: int, limit: int) -> Window:
    """
    Span of up to `limit` positions around a pivot position.

    Starts max(1, limit // 2) positions before the pivot, shifts back near the
    end of the list so the span stays full, and always contains the pivot.
    """
    total = int(total or 0)
    limit = int(limit or 0)
    if total <= 0 or limit <= 0:
        return Window(0, 0)

    pivot = max(0, min(int(pivot), total - 1))
    half = max(1, limit // 2)

    start = pivot - half
    start = min(start, total - limit)
    start = max(start, pivot - limit + 1)
    start = max(start, 0)
    return Window(start, min(total, start + limit))
