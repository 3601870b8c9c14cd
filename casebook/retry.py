"""Adaptive retry strategies that stop retrying when failures pile up."""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass


class Strategy(ABC):
    """Decides whether to retry after an attempt and how long to wait."""

    @abstractmethod
    def next(self, err: BaseException | None) -> tuple[float, bool]:
        """Return ``(delay_seconds, should_retry)`` for an attempt's outcome."""


@dataclass
class _Request:
    timestamp: int
    success: bool


class NormalAdaptiveStrategy(Strategy):
    """Sliding-window strategy.

    Failures older than ``interval`` seconds are forgotten; once ``fail_num``
    failures remain in the window, further failures are not retried.
    """

    def __init__(
        self,
        strategy: Strategy,
        interval: float,
        fail_num: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock = threading.Lock()
        self._strategy = strategy
        self._interval_ms = round(interval * 1000)
        self._fail_num = fail_num
        self._clock = clock
        self._window: list[_Request] = []

    def _now_ms(self) -> int:
        return round(self._clock() * 1000)

    def next(self, err: BaseException | None) -> tuple[float, bool]:
        if err is None:
            return self._success(err)
        return self._fail(err)

    def _success(self, err: None) -> tuple[float, bool]:
        with self._lock:
            self._window.append(_Request(self._now_ms(), True))
            return self._strategy.next(err)

    def _fail(self, err: BaseException) -> tuple[float, bool]:
        with self._lock:
            now = self._now_ms()
            threshold = now - self._interval_ms
            self._window = [r for r in self._window if r.timestamp >= threshold]
            fail_count = sum(1 for r in self._window if not r.success)
            self._window.append(_Request(now, False))
            if fail_count >= self._fail_num:
                return 0.0, False
            return self._strategy.next(err)

    def counts(self) -> tuple[int, int]:
        """Return ``(successes, failures)`` currently held in the window."""
        with self._lock:
            successes = sum(1 for r in self._window if r.success)
            return successes, len(self._window) - successes


_RING_BITS = 1024


class UpgradeAdaptiveStrategy(Strategy):
    """Ring-buffer strategy over the last 1024 requests.

    Each request sets (failure) or clears (success) one bit; a failure is not
    retried when ``threshold`` or more bits are already set.
    """

    def __init__(self, strategy: Strategy, threshold: int) -> None:
        self._strategy = strategy
        self._threshold = threshold
        self._lock = threading.Lock()
        self._ring = 0
        self._count = 0

    def next(self, err: BaseException | None) -> tuple[float, bool]:
        if err is None:
            with self._lock:
                self._mark(False)
            return self._strategy.next(err)
        with self._lock:
            failed = self._ring.bit_count()
            self._mark(True)
        if failed >= self._threshold:
            return 0.0, False
        return self._strategy.next(err)

    def failed_count(self) -> int:
        """Number of failures recorded in the ring."""
        with self._lock:
            return self._ring.bit_count()

    def _mark(self, failed: bool) -> None:
        self._count += 1
        bit = 1 << (self._count % _RING_BITS)
        if failed:
            self._ring |= bit
        else:
            self._ring &= ~bit