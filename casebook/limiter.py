"""QPS monitoring and a limiter that lets VIP traffic through under load."""

from __future__ import annotations

import enum
import logging
import random
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from typing import Any

logger = logging.getLogger(__name__)

VIP_CTX_KEY = "vip"


class State(enum.IntEnum):
    HEALTHY = 0  # nobody is limited
    RATE_LIMIT = 1  # only VIP requests pass
    RECOVERING = 2  # regular requests pass at a growing rate


class Limiter(ABC):
    @abstractmethod
    def limit(self, ctx: Mapping[str, Any] | None) -> bool:
        """Return True when the request must be rejected."""


class Monitor(ABC):
    @abstractmethod
    def qps(self) -> int:
        """Current load figure."""


class RateLimitMonitor(Monitor):
    """Counts requests that are currently in flight."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._count = 0

    def qps(self) -> int:
        with self._lock:
            return self._count

    def incr(self) -> None:
        with self._lock:
            self._count += 1

    def decr(self) -> None:
        with self._lock:
            self._count -= 1


class VipLimiter(Limiter):
    """Three-state limiter driven by periodic QPS observations.

    Healthy: five consecutive observations at or above the limit switch to
    rate limiting. Rate limiting: five consecutive observations below 80 % of
    the limit switch to recovering at a 10 % pass rate. Recovering: every five
    observations below 85 % raise the pass rate by 10 (healthy at 100); every
    three at or above the limit lower it by 10.
    """

    def __init__(
        self,
        qps_upper_limit: int,
        monitor: Monitor,
        interval: float = 1.0,
        roll: Callable[[], int] | None = None,
    ) -> None:
        self._qps_upper_limit = qps_upper_limit
        self._monitor = monitor
        self._interval = interval
        self._roll = roll or (lambda: random.randrange(100))
        self._lock = threading.Lock()
        self._state = State.HEALTHY
        self._pass_rate = 0
        self._below = 0
        self._above = 0
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @staticmethod
    def _is_vip(ctx: Mapping[str, Any] | None) -> bool:
        if not ctx:
            return False
        value = ctx.get(VIP_CTX_KEY)
        return isinstance(value, int) and not isinstance(value, bool) and value == 1

    def limit(self, ctx: Mapping[str, Any] | None) -> bool:
        if self._is_vip(ctx):
            return False
        with self._lock:
            if self._state is State.HEALTHY:
                return False
            if self._state is State.RATE_LIMIT:
                return True
            return self._roll() >= self._pass_rate

    def observe(self, qps: int) -> None:
        """Feed one QPS sample into the state machine."""
        with self._lock:
            if self._state is State.HEALTHY:
                self._below, self._above = 0, self._handle_healthy(qps, self._above)
            elif self._state is State.RATE_LIMIT:
                self._below, self._above = self._handle_rate_limit(qps, self._below), 0
            else:
                self._below, self._above = self._handle_recovering(qps, self._below, self._above)

    def _handle_healthy(self, qps: int, count: int) -> int:
        if qps < self._qps_upper_limit:
            return 0
        count += 1
        if count >= 5:
            self._state = State.RATE_LIMIT
            self._pass_rate = 100
            logger.info("进入限流状态")
            return 0
        return count

    def _handle_rate_limit(self, qps: int, count: int) -> int:
        if qps >= int(self._qps_upper_limit * 0.8):
            return 0
        count += 1
        if count >= 5:
            self._state = State.RECOVERING
            self._pass_rate = 10
            logger.info("进入限流恢复状态，普通用户通过率设为 10%")
            return 0
        return count

    def _handle_recovering(self, qps: int, below: int, above: int) -> tuple[int, int]:
        if qps < int(self._qps_upper_limit * 0.85):
            below += 1
            if below >= 5:
                self._pass_rate += 10
                logger.info("进入限流恢复状态，普通用户通过率设为 %d%%", self._pass_rate)
                if self._pass_rate >= 100:
                    self._state = State.HEALTHY
                    self._pass_rate = 100
                    logger.info("恢复健康")
                below = 0
        elif qps >= self._qps_upper_limit:
            above += 1
            if above >= 3:
                self._pass_rate = max(0, self._pass_rate - 10)
                logger.info("超过限流阈值，普通用户通过率设为%d%%", self._pass_rate)
                above = 0
        return below, above

    def _poll(self) -> None:
        try:
            qps = self._monitor.qps()
        except Exception:
            logger.exception("获取系统qps失败")
            qps = 0
        self.observe(qps)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self._poll()
            self._stop_event.wait(self._interval)

    def start(self) -> None:
        """Start sampling the monitor in a background thread."""
        if self._thread is not None:
            raise RuntimeError("limiter already started")
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="vip-limiter", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the background sampling thread, if running."""
        thread, self._thread = self._thread, None
        if thread is None:
            return
        self._stop_event.set()
        thread.join()

    def __enter__(self) -> VipLimiter:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()

    def state_and_pass_rate(self) -> tuple[State, int]:
        with self._lock:
            return self._state, self._pass_rate