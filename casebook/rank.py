"""Leaderboard served from a local snapshot of sharded sorted sets."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any

from casebook.cron import Scheduler
from casebook.topn import top_n

logger = logging.getLogger(__name__)

DEFAULT_KEY_NUMBER = 10
SYNC_COUNT = 100


@dataclass(frozen=True)
class RankItem:
    id: int
    score: int


class LocalRankCache:
    """Holds the latest leaderboard snapshot in memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: list[RankItem] = []

    def set(self, items: list[RankItem]) -> None:
        with self._lock:
            self._items = list(items)

    def get(self) -> list[RankItem]:
        with self._lock:
            return list(self._items)


def _shard(item_id: int, key_number: int) -> int:
    # Remainder takes the sign of the dividend.
    remainder = abs(item_id) % key_number
    return -remainder if item_id < 0 else remainder


def _parse_member(member: Any) -> int:
    if isinstance(member, bytes):
        member = member.decode("utf-8", "replace")
    try:
        return int(member)
    except (TypeError, ValueError):
        return 0


class RedisRankCache:
    """Scores spread over ``key_number`` sorted sets named ``<key>:<shard>``.

    ``client`` needs ``zadd(name, mapping)`` and
    ``zrevrange(name, start, end, withscores=True)`` as a Redis client provides.
    """

    def __init__(self, client: Any, key: str = "rank", key_number: int = DEFAULT_KEY_NUMBER) -> None:
        self._client = client
        self._key = key
        self._key_number = key_number

    def set(self, item: RankItem) -> None:
        name = f"{self._key}:{_shard(item.id, self._key_number)}"
        self._client.zadd(name, {item.id: float(item.score)})

    def get(self, n: int) -> list[RankItem]:
        """Return the top ``n`` items across all shards, highest score first."""
        shards = []
        for shard in range(self._key_number):
            members = self._client.zrevrange(f"{self._key}:{shard}", 0, n, withscores=True)
            shards.append([RankItem(id=_parse_member(m), score=int(s)) for m, s in members])
        return top_n(shards, n, key=lambda item: item.score)


class RankRepository:
    """Reads from the local snapshot, writes to the shared sorted sets."""

    def __init__(self, local_cache: LocalRankCache, redis_cache: RedisRankCache) -> None:
        self._local = local_cache
        self._redis = redis_cache

    def top_n(self) -> list[RankItem]:
        return self._local.get()

    def replace_top_n(self, item: RankItem) -> None:
        self._redis.set(item)


class RankService:
    def __init__(self, repo: RankRepository) -> None:
        self._repo = repo

    def top_n(self) -> list[RankItem]:
        return self._repo.top_n()

    def update_score(self, item: RankItem) -> None:
        self._repo.replace_top_n(item)


class RedisToLocalJob:
    """Copies the top entries from the sorted sets into the local snapshot."""

    def __init__(self, redis_cache: RedisRankCache, local_cache: LocalRankCache, count: int = SYNC_COUNT) -> None:
        self._redis = redis_cache
        self._local = local_cache
        self._count = count

    def run(self) -> None:
        try:
            items = self._redis.get(self._count)
        except Exception:
            logger.exception("从redis获取数据失败")
            return
        self._local.set(items)


def init_job(redis_cache: RedisRankCache, local_cache: LocalRankCache) -> Scheduler:
    """Start a scheduler syncing the leaderboard to the local cache every minute."""
    scheduler = Scheduler()
    scheduler.add_job("*/1 * * * *", RedisToLocalJob(redis_cache, local_cache))
    scheduler.start()
    return scheduler