"""Coupon grabbing: stock sharded over several counters, a Bloom filter against repeat users."""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_COUPON = 100_000
INITIAL_REJECT_RATE = 50
BLOOM_FILTER = "bloom_filter"


class InsufficientCouponError(Exception):
    """Raised when every stock counter is exhausted."""

    def __init__(self, message: str = "库存不足") -> None:
        super().__init__(message)


def _go_mod(value: int, modulus: int) -> int:
    # Remainder takes the sign of the dividend.
    remainder = abs(value) % modulus
    return -remainder if value < 0 else remainder


def _go_div(value: int, divisor: int) -> int:
    # Integer division truncating toward zero.
    quotient = abs(value) // abs(divisor)
    return -quotient if (value < 0) != (divisor < 0) else quotient


class RedisCoupon:
    """Stock split over ``key_number`` counters named ``<key>:<index>``.

    ``client`` needs ``pipeline``, ``decr`` and ``execute_command`` (for ``BF.ADD``)
    as a Redis client with the Bloom filter module provides. The stock is written
    when the object is created.
    """

    def __init__(
        self,
        client: Any,
        key: str,
        key_number: int,
        count: int,
        randrange: Callable[[int], int] = random.randrange,
    ) -> None:
        if key_number <= 0:
            raise ValueError("key_number must be positive")
        self._client = client
        self._key = key
        self._key_number = key_number
        self._randrange = randrange
        self._lock = threading.Lock()
        self._active = [False] * key_number
        try:
            self._set_coupon(count)
        except Exception as exc:
            raise RuntimeError(f"设置库存失败 {exc}") from exc

    def _name(self, index: int) -> str:
        return f"{self._key}:{index}"

    def _set_coupon(self, count: int) -> None:
        quotient = _go_div(count, self._key_number)
        remainder = count - quotient * self._key_number
        pipe = self._client.pipeline(transaction=True)
        for index in range(self._key_number):
            amount = quotient + remainder if index == self._key_number - 1 else quotient
            pipe.set(self._name(index), amount)
        try:
            pipe.execute()
        finally:
            with self._lock:
                self._active = [True] * self._key_number

    def get_coupon(self) -> int:
        """Total stock left over all counters."""
        pipe = self._client.pipeline(transaction=True)
        names = [self._name(index) for index in range(self._key_number)]
        for name in names:
            pipe.get(name)
        total = 0
        for name, value in zip(names, pipe.execute()):
            if value is None:
                raise LookupError(f"库存键不存在: {name}")
            total += int(value)
        return total

    def _is_active(self, index: int) -> bool:
        with self._lock:
            return self._active[index]

    def _deactivate(self, index: int) -> None:
        with self._lock:
            self._active[index] = False

    def decr_coupon(self) -> None:
        """Take one coupon from a counter, starting at a random one.

        Raises :class:`InsufficientCouponError` when no counter has stock left.
        """
        start = self._randrange(self._key_number)
        for offset in range(self._key_number):
            index = (start + offset) % self._key_number
            if not self._is_active(index):
                continue
            left = int(self._client.decr(self._name(index)))
            if left > 0:
                return
            if left == 0:
                self._deactivate(index)
                return
        raise InsufficientCouponError()

    def check_uid_exist(self, uid: int) -> bool:
        """Register ``uid``; True when it was not seen before, False when it already grabbed."""
        name = f"{BLOOM_FILTER}:{_go_mod(uid, self._key_number)}"
        return bool(self._client.execute_command("BF.ADD", name, uid))


class CouponRepository:
    def __init__(self, cache: RedisCoupon) -> None:
        self._cache = cache

    def get_coupon(self) -> int:
        return self._cache.get_coupon()

    def decr_coupon(self) -> None:
        self._cache.decr_coupon()

    def check_uid_exist(self, uid: int) -> bool:
        return self._cache.check_uid_exist(uid)


class CouponService:
    """Hands out coupons, randomly rejecting a share of requests while stock is plentiful.

    The rejection rate starts at 50 % and drops by 10 points for every 10,000
    coupons taken, down to 0.
    """

    def __init__(
        self,
        repo: CouponRepository,
        randrange: Callable[[int], int] = random.randrange,
        interval: float = 0.001,
    ) -> None:
        self._repo = repo
        self._randrange = randrange
        self._interval = interval
        self._reject_rate = INITIAL_REJECT_RATE
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def reject_rate(self) -> int:
        return self._reject_rate

    def preempt(self, uid: int) -> bool:
        """Try to grab a coupon for ``uid``; True on success."""
        if not self._repo.check_uid_exist(uid):
            logger.info("%d 抢过了", uid)
            return False
        if self._randrange(100) < self._reject_rate:
            logger.info("被随机拒绝了")
            return False
        try:
            self._repo.decr_coupon()
        except InsufficientCouponError:
            logger.info("库存不足")
            return False
        return True

    def adjust_once(self) -> int:
        """Recompute the rejection rate from the stock left and return it."""
        try:
            coupons = self._repo.get_coupon()
        except Exception:
            logger.exception("获取库存失败")
            coupons = 0
        reduced = DEFAULT_COUPON - coupons
        self._reject_rate = max(0, 50 - _go_div(reduced, 10_000) * 10)
        return self._reject_rate

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.adjust_once()
            self._stop_event.wait(self._interval)

    def start(self) -> None:
        """Keep adjusting the rejection rate in a background thread."""
        if self._thread is not None:
            raise RuntimeError("coupon service already started")
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="coupon-adjust", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the background thread, if running."""
        thread, self._thread = self._thread, None
        if thread is None:
            return
        self._stop_event.set()
        thread.join()

    def __enter__(self) -> CouponService:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()