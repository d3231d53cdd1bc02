"""Injectable failure policies for the simulated collaborators."""

from __future__ import annotations

import random
import threading
from typing import Protocol


class FailurePolicy(Protocol):
    def should_fail(self) -> bool:
        ...


class NeverFail:
    def should_fail(self) -> bool:
        return False


class AlwaysFail:
    def should_fail(self) -> bool:
        return True


class RandomFailure:
    """Fails a fixed fraction of calls; seedable so runs can be replayed."""

    def __init__(self, rate: float, seed: int | None = None):
        if not 0.0 <= rate <= 1.0:
            raise ValueError(f"failure rate must be within [0, 1], got {rate}")
        self.rate = rate
        self._rng = random.Random(seed)
        self._lock = threading.Lock()

    def should_fail(self) -> bool:
        with self._lock:
            return self._rng.random() < self.rate


class FailEvery:
    """Fails every ``n``-th call."""

    def __init__(self, n: int):
        if n < 1:
            raise ValueError("n must be >= 1")
        self.n = n
        self._calls = 0
        self._lock = threading.Lock()

    def should_fail(self) -> bool:
        with self._lock:
            self._calls += 1
            return self._calls % self.n == 0


def policy_from_rate(rate: float, seed: int | None = None) -> FailurePolicy:
    if rate <= 0.0:
        return NeverFail()
    if rate >= 1.0:
        return AlwaysFail()
    return RandomFailure(rate, seed)
