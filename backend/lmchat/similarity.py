from __future__ import annotations

import math


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        cur = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            cur.append(min(cur[j - 1] + 1, prev[j] + 1, prev[j - 1] + cost))
        prev = cur
    return prev[-1]


def names_similar(a: str, b: str, max_ratio: float = 0.2) -> bool:
    """Fuzzy name match tolerant of small typos.

    Names of one or two characters must match exactly; longer names may differ
    by at most ``max_ratio`` of the shorter name's length.
    """
    n1 = (a or "").strip().lower()
    n2 = (b or "").strip().lower()
    if len(n1) <= 2 or len(n2) <= 2:
        return n1 == n2
    max_distance = math.floor(min(len(n1), len(n2)) * max_ratio)
    return levenshtein(n1, n2) <= max_distance
