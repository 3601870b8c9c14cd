"""Order storage in SQLite behind a cache-aside repository."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from casebook.order_cache import Cache, KeyNotFoundError, Order

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderRecord:
    """One row of the ``orders`` table; times are Unix milliseconds."""

    id: int
    name: str = ""
    price: int = 0
    buyer_id: int = 0
    ctime: int = 0
    utime: int = 0


class OrderNotFoundError(LookupError):
    """Raised when no order row has the requested id."""

    def __init__(self, message: str = "record not found") -> None:
        super().__init__(message)


class OrderDAO:
    def __init__(self, db: sqlite3.Connection, clock: Callable[[], float] = time.time) -> None:
        self._db = db
        self._clock = clock
        self._lock = threading.Lock()

    def init_tables(self) -> None:
        with self._lock, self._db:
            self._db.execute(
                "CREATE TABLE IF NOT EXISTS orders ("
                "id INTEGER PRIMARY KEY AUTOINCREMENT, "
                "name TEXT NOT NULL DEFAULT '', "
                "price INTEGER NOT NULL DEFAULT 0, "
                "buyer_id INTEGER NOT NULL DEFAULT 0, "
                "ctime INTEGER NOT NULL DEFAULT 0, "
                "utime INTEGER NOT NULL DEFAULT 0)"
            )

    def save(self, order: OrderRecord) -> None:
        """Insert the order, or update name, price and utime of an existing id.

        An id of 0 lets the database assign one.
        """
        now = int(self._clock() * 1000)
        with self._lock, self._db:
            self._db.execute(
                "INSERT INTO orders (id, name, price, buyer_id, ctime, utime) VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET name = excluded.name, price = excluded.price, "
                "utime = excluded.utime",
                (order.id or None, order.name, order.price, order.buyer_id, now, now),
            )

    def get(self, order_id: int) -> OrderRecord:
        with self._lock:
            row = self._db.execute(
                "SELECT id, name, price, buyer_id, ctime, utime FROM orders WHERE id = ? LIMIT 1",
                (order_id,),
            ).fetchone()
        if row is None:
            raise OrderNotFoundError()
        return OrderRecord(*row)


class OrderRepository:
    """Cache-aside: writes go to the database and invalidate; reads fill the cache."""

    def __init__(self, dao: OrderDAO, cache: Cache) -> None:
        self._dao = dao
        self._cache = cache

    def save(self, order: Order) -> None:
        self._dao.save(OrderRecord(id=order.id, name=order.name, price=order.price, buyer_id=order.buyer_id))
        if order.id != 0:
            try:
                self._cache.delete(order.id)
            except Exception:
                logger.exception("删除缓存失败")

    def get(self, order_id: int) -> Order:
        try:
            return self._cache.get(order_id)
        except KeyNotFoundError:
            pass
        except Exception:
            logger.exception("从缓存中获取数据失败")
        record = self._dao.get(order_id)
        order = Order(id=record.id, name=record.name, buyer_id=record.buyer_id, price=record.price)
        try:
            self._cache.set(order)
        except Exception:
            logger.exception("设置缓存失败")
        return order


class OrderService:
    def __init__(self, repo: OrderRepository) -> None:
        self._repo = repo

    def save(self, order: Order) -> None:
        self._repo.save(order)

    def get(self, order_id: int) -> Order:
        return self._repo.get(order_id)