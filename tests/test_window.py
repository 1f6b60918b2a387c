import random

import pytest

from chatrecall.memory.models import Window
from chatrecall.memory.window import select_best_window, window_around


def _hits(matches, start, end):
    return sum(1 for i in matches if start <= i < end)


def _best_hits(matches, total, n):
    best = 0
    for s in range(0, max(1, total - n + 1)):
        best = max(best, _hits(matches, s, min(s + n, total)))
    return best


@pytest.mark.parametrize(
    "matches,total,n,expected",
    [
        ([], 10, 4, Window(0, 4)),
        ([], 3, 5, Window(0, 3)),
        ([1, 2], 0, 4, Window(0, 0)),
        ([1, 2], 10, 0, Window(0, 0)),
        ([1, 2], 10, -3, Window(0, 0)),
        ([-5, 42], 10, 4, Window(0, 4)),
    ],
)
def test_degenerate_inputs_return_default_window(matches, total, n, expected):
    assert select_best_window(matches, total, n) == expected


def test_recency_breaks_ties():
    # Both candidates hold one hit; the later one wins.
    assert select_best_window([1, 8], 10, 3) == Window(7, 10)


def test_density_beats_recency():
    assert select_best_window([0, 1, 2, 9], 10, 3) == Window(0, 3)


def test_finds_cluster_missed_by_centered_spans():
    # Centered on 10 or 13 a 4-wide span only holds one hit; [10, 14) holds both.
    assert select_best_window([10, 13], 20, 4) == Window(10, 14)


def test_ignores_out_of_range_and_duplicate_indices():
    assert select_best_window([-1, 3, 3, 99], 5, 2) == Window(2, 4)


def test_unsorted_input_is_accepted():
    assert select_best_window([8, 1], 10, 3) == select_best_window([1, 8], 10, 3)


def test_window_larger_than_conversation():
    assert select_best_window([1], 3, 10) == Window(0, 3)


def test_density_optimal_against_brute_force():
    rng = random.Random(1234)
    for _ in range(500):
        total = rng.randint(1, 40)
        n = rng.randint(1, 12)
        matches = sorted(rng.sample(range(total), rng.randint(1, total)))

        window = select_best_window(matches, total, n)

        assert 0 <= window.start <= window.end <= total
        assert window.size == min(n, total)
        assert _hits(matches, window.start, window.end) == _best_hits(matches, total, n)


def test_selection_is_deterministic():
    matches = [2, 3, 7, 11, 12, 19]
    assert select_best_window(matches, 20, 5) == select_best_window(list(matches), 20, 5)


@pytest.mark.parametrize(
    "pivot,total,limit,expected",
    [
        (2, 5, 3, Window(1, 4)),
        (0, 10, 4, Window(0, 4)),
        (9, 10, 4, Window(6, 10)),
        (5, 10, 1, Window(5, 6)),
        (1, 3, 5, Window(0, 3)),
        (0, 0, 3, Window(0, 0)),
        (3, 10, 0, Window(0, 0)),
    ],
)
def test_window_around_pivot(pivot, total, limit, expected):
    assert window_around(pivot, total, limit) == expected


def test_window_around_always_contains_pivot():
    for total in range(1, 15):
        for limit in range(1, 8):
            for pivot in range(total):
                w = window_around(pivot, total, limit)
                assert w.start <= pivot < w.end
                assert w.size == min(limit, total)
