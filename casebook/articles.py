"""Article like counts stored in two sharded tables, with snowflake ids."""

from __future__ import annotations

import sqlite3
import threading
import time
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace

from casebook.topn import top_n

TABLES = ("article_static_tab0", "article_static_tab1")

_EPOCH_MS = 1288834974657
_NODE_BITS = 10
_STEP_BITS = 12
_STEP_MASK = (1 << _STEP_BITS) - 1
_MAX_NODE = (1 << _NODE_BITS) - 1


@dataclass(frozen=True)
class Article:
    id: int
    like_cnt: int


@dataclass(frozen=True)
class ArticleStatic:
    """One row of an article statistics table."""

    id: int
    article_id: int
    like_cnt: int


class SnowflakeNode:
    """Generates 63-bit ids: milliseconds since the epoch, node number, sequence."""

    def __init__(self, node: int = 0, clock: Callable[[], float] = time.time) -> None:
        if not 0 <= node <= _MAX_NODE:
            raise ValueError(f"node number must be between 0 and {_MAX_NODE}")
        self._node = node
        self._clock = clock
        self._lock = threading.Lock()
        self._last = -1
        self._step = 0

    def _now_ms(self) -> int:
        return round(self._clock() * 1000)

    def generate(self) -> int:
        """Return the next unique id."""
        with self._lock:
            now = self._now_ms()
            if now == self._last:
                self._step = (self._step + 1) & _STEP_MASK
                if self._step == 0:
                    while now <= self._last:
                        now = self._now_ms()
            else:
                self._step = 0
            self._last = now
            return ((now - _EPOCH_MS) << (_NODE_BITS + _STEP_BITS)) | (self._node << _STEP_BITS) | self._step


def _table_for(article_id: int) -> str:
    # Remainder takes the sign of the dividend.
    remainder = abs(article_id) % 2
    if article_id < 0:
        remainder = -remainder
    return f"article_static_tab{remainder}"


class ArticleStaticDAO:
    """Statistics split by ``article_id % 2`` over two SQLite tables."""

    def __init__(self, db: sqlite3.Connection, node: SnowflakeNode | None = None) -> None:
        self._db = db
        self._node = node or SnowflakeNode(0)
        self._lock = threading.Lock()

    def init_tables(self) -> None:
        with self._lock, self._db:
            for table in TABLES:
                self._db.execute(
                    f'CREATE TABLE IF NOT EXISTS "{table}" ('
                    "id INTEGER PRIMARY KEY, "
                    "article_id INTEGER NOT NULL UNIQUE, "
                    "like_cnt INTEGER NOT NULL DEFAULT 0)"
                )

    def batch_create(self, articles: Iterable[ArticleStatic]) -> None:
        """Insert rows with fresh ids; an existing ``article_id`` gets its like count updated."""
        by_table: dict[str, list[ArticleStatic]] = defaultdict(list)
        for article in articles:
            row = replace(article, id=self._node.generate())
            by_table[_table_for(row.article_id)].append(row)
        with self._lock:
            for table, rows in by_table.items():
                with self._db:
                    self._db.executemany(
                        f'INSERT INTO "{table}" (id, article_id, like_cnt) VALUES (?, ?, ?) '
                        "ON CONFLICT(article_id) DO UPDATE SET like_cnt = excluded.like_cnt",
                        [(r.id, r.article_id, r.like_cnt) for r in rows],
                    )

    def top_n(self, n: int) -> list[ArticleStatic]:
        """Return the ``n`` rows with the most likes across both tables."""
        per_table = []
        with self._lock:
            for table in TABLES:
                cursor = self._db.execute(
                    f'SELECT id, article_id, like_cnt FROM "{table}" ORDER BY like_cnt DESC LIMIT ?',
                    (n,),
                )
                per_table.append([ArticleStatic(*row) for row in cursor.fetchall()])
        return top_n(per_table, n, key=lambda row: row.like_cnt)


class ArticleService:
    def __init__(self, dao: ArticleStaticDAO) -> None:
        self._dao = dao

    def batch_create(self, articles: Iterable[Article]) -> None:
        self._dao.batch_create(ArticleStatic(id=0, article_id=a.id, like_cnt=a.like_cnt) for a in articles)

    def top_n(self, n: int) -> list[Article]:
        return [Article(id=row.article_id, like_cnt=row.like_cnt) for row in self._dao.top_n(n)]