"""Order caches: in-memory, Redis-backed, and a mix that fails over between them."""

from __future__ import annotations

import enum
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Order:
    id: int
    name: str = ""
    buyer_id: int = 0
    price: int = 0

    def to_json(self) -> str:
        """Serialise with the field names used in the shared cache."""
        return json.dumps(
            {"ID": self.id, "Name": self.name, "BuyerID": self.buyer_id, "Price": self.price},
            separators=(",", ":"),
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, text: str | bytes) -> Order:
        data = json.loads(text)
        return cls(
            id=int(data.get("ID", 0)),
            name=str(data.get("Name", "")),
            buyer_id=int(data.get("BuyerID", 0)),
            price=int(data.get("Price", 0)),
        )


class KeyNotFoundError(LookupError):
    """Raised when a cache holds no entry for the requested order."""

    def __init__(self, message: str = "键不存在") -> None:
        super().__init__(message)


class Cache(ABC):
    @abstractmethod
    def get(self, order_id: int) -> Order:
        """Return the cached order or raise :class:`KeyNotFoundError`."""

    @abstractmethod
    def set(self, order: Order) -> None:
        """Store ``order`` under its id."""

    @abstractmethod
    def delete(self, order_id: int) -> None:
        """Drop the entry for ``order_id`` if present."""


class LocalOrderCache(Cache):
    """Thread-safe in-memory cache."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._orders: dict[int, Order] = {}

    def get(self, order_id: int) -> Order:
        with self._lock:
            try:
                return self._orders[order_id]
            except KeyError:
                raise KeyNotFoundError() from None

    def set(self, order: Order) -> None:
        with self._lock:
            self._orders[order.id] = order

    def delete(self, order_id: int) -> None:
        with self._lock:
            self._orders.pop(order_id, None)


class RedisOrderCache(Cache):
    """Orders stored as JSON under ``order:<id>``.

    ``client`` needs ``get``, ``set``, ``delete`` and ``ping`` as a Redis client provides.
    """

    def __init__(self, client: Any) -> None:
        self._client = client

    @staticmethod
    def key(order_id: int) -> str:
        return f"order:{order_id}"

    def get(self, order_id: int) -> Order:
        value = self._client.get(self.key(order_id))
        if value is None:
            raise KeyNotFoundError()
        return Order.from_json(value)

    def set(self, order: Order) -> None:
        self._client.set(self.key(order.id), order.to_json())

    def delete(self, order_id: int) -> None:
        self._client.delete(self.key(order_id))

    def ping(self) -> None:
        """Raise :class:`ConnectionError` unless the server answers the ping."""
        result = self._client.ping()
        if result is True or result in ("PONG", b"PONG"):
            return
        raise ConnectionError("ping不通")


class CacheStrategy(enum.IntEnum):
    LOCAL_ON_FAILURE = 0  # write locally only while Redis is down
    ALWAYS_LOCAL = 1  # always write locally, and to Redis while it is up


class MixedOrderCache(Cache):
    """Serves from Redis and fails over to the local cache when Redis stops answering.

    Each probe pings Redis, retrying twice after ``retry_delay`` seconds. One failed
    probe switches to the local cache; three successful probes switch back.
    """

    def __init__(
        self,
        local_cache: LocalOrderCache,
        redis_cache: RedisOrderCache,
        strategy: CacheStrategy = CacheStrategy.LOCAL_ON_FAILURE,
        interval: float = 1.0,
        retry_delay: float = 0.01,
    ) -> None:
        self._local = local_cache
        self._redis = redis_cache
        self._strategy = CacheStrategy(strategy)
        self._interval = interval
        self._retry_delay = retry_delay
        self._lock = threading.Lock()
        self._use_local = False
        self._success_count = 0
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def using_local(self) -> bool:
        with self._lock:
            return self._use_local

    def get(self, order_id: int) -> Order:
        if self.using_local:
            return self._local.get(order_id)
        return self._redis.get(order_id)

    def set(self, order: Order) -> None:
        if self._strategy is CacheStrategy.LOCAL_ON_FAILURE:
            if self.using_local:
                self._local.set(order)
            else:
                self._redis.set(order)
            return
        self._local.set(order)
        if not self.using_local:
            self._redis.set(order)

    def delete(self, order_id: int) -> None:
        if self._strategy is CacheStrategy.LOCAL_ON_FAILURE:
            if self.using_local:
                self._local.delete(order_id)
            else:
                self._redis.delete(order_id)
            return
        self._local.delete(order_id)
        if not self.using_local:
            self._redis.delete(order_id)

    def _ping_ok(self) -> bool:
        try:
            self._redis.ping()
        except Exception:
            return False
        return True

    def _redis_available(self) -> bool:
        if self._ping_ok():
            return True
        for _ in range(2):
            time.sleep(self._retry_delay)
            if self._ping_ok():
                return True
        return False

    def probe(self) -> bool:
        """Check Redis once, updating the failover state; return whether it answered."""
        available = self._redis_available()
        with self._lock:
            if available:
                if self._use_local:
                    self._success_count += 1
                    if self._success_count >= 3:
                        logger.info("Redis 连接恢复，切换回 Redis...")
                        self._use_local = False
                        self._success_count = 0
            else:
                if not self._use_local:
                    self._use_local = True
                    logger.error("发现redis故障，切换成本地缓存")
                self._success_count = 0
        return available

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.probe()
            self._stop_event.wait(self._interval)

    def start(self) -> None:
        """Start probing Redis in a background thread."""
        if self._thread is not None:
            raise RuntimeError("cache monitor already started")
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="redis-failover", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the background probing thread, if running."""
        thread, self._thread = self._thread, None
        if thread is None:
            return
        self._stop_event.set()
        thread.join()

    def __enter__(self) -> MixedOrderCache:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()