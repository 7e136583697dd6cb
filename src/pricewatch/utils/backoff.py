from __future__ import annotations

import random
from typing import Iterator


def next_backoff(prev: float, cap: float) -> float:
    """Exponential backoff progression with cap (no jitter)."""
    return min(prev * 2.0, cap)


def jitter(v: float, *, ratio: float = 0.2) -> float:
    """
    Add ±ratio jitter. ratio=0.2 -> multiply by [0.8, 1.2].
    """
    lo = 1.0 - ratio
    hi = 1.0 + ratio
    return v * (lo + (hi - lo) * random.random())


def backoff_iter(initial: float = 0.5, cap: float = 60.0) -> Iterator[float]:
    """
    Deterministic (no jitter) iterator of backoff values:
    0.5, 1, 2, 4, ... (capped).
    """
    v = initial
    while True:
        yield v
        v = next_backoff(v, cap)


class Backoff:
    """
    Stateful backoff for reconnect loops: next_delay() grows until cap,
    reset() after a successful call starts over from `initial`.
    """
    __slots__ = ("initial", "cap", "ratio", "_it", "failures")

    def __init__(self, initial: float = 0.5, cap: float = 60.0, ratio: float = 0.2):
        self.initial = initial
        self.cap = cap
        self.ratio = ratio
        self._it = backoff_iter(initial, cap)
        self.failures = 0

    def next_delay(self) -> float:
        self.failures += 1
        base = next(self._it)
        return jitter(base, ratio=self.ratio) if self.ratio else base

    def reset(self) -> None:
        self._it = backoff_iter(self.initial, self.cap)
        self.failures = 0
