"""Article leaderboard: database to sorted set to local snapshot."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from typing import Any

from casebook.articles import Article, ArticleService
from casebook.cron import Scheduler

logger = logging.getLogger(__name__)

DB_TO_REDIS_COUNT = 1000
REDIS_TO_LOCAL_COUNT = 100


class LocalArticleCache:
    """Holds the latest leaderboard snapshot in memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: list[Article] = []

    def set(self, items: Iterable[Article]) -> None:
        with self._lock:
            self._items = list(items)

    def get(self) -> list[Article]:
        with self._lock:
            return list(self._items)


def _parse_member(member: Any) -> int:
    if isinstance(member, bytes):
        member = member.decode("utf-8", "replace")
    try:
        return int(member)
    except (TypeError, ValueError):
        return 0


class RedisArticleCache:
    """Leaderboard kept in one sorted set.

    ``client`` needs ``zadd``, ``zrevrange`` and ``pipeline`` as a Redis client provides.
    """

    def __init__(self, client: Any, key: str) -> None:
        self._client = client
        self._key = key

    def set(self, items: Iterable[Article]) -> None:
        """Raise scores of members already present; new members are not added."""
        mapping = {item.id: float(item.like_cnt) for item in items}
        self._client.zadd(self._key, mapping, xx=True, gt=True)

    def get(self, n: int) -> list[Article]:
        members = self._client.zrevrange(self._key, 0, n - 1, withscores=True)
        return [Article(id=_parse_member(m), like_cnt=int(score)) for m, score in members]

    def sync_rank(self, items: Iterable[Article]) -> None:
        """Replace the whole sorted set with ``items`` in one transaction."""
        mapping = {item.id: float(item.like_cnt) for item in items}
        pipe = self._client.pipeline(transaction=True)
        pipe.delete(self._key)
        pipe.zadd(self._key, mapping)
        results = pipe.execute(raise_on_error=False)
        if isinstance(results[0], Exception):
            raise RuntimeError(f"删除原有的键失败 {results[0]}") from results[0]
        if isinstance(results[1], Exception):
            raise RuntimeError(f"往zset添加元素失败 {results[1]}") from results[1]


class RankRepository:
    """Reads from the local snapshot, writes to the sorted set."""

    def __init__(self, local_cache: LocalArticleCache, redis_cache: RedisArticleCache) -> None:
        self._local = local_cache
        self._redis = redis_cache

    def top_n(self) -> list[Article]:
        return self._local.get()

    def replace_top_n(self, items: Iterable[Article]) -> None:
        self._redis.set(items)


class RankService:
    def __init__(self, repo: RankRepository) -> None:
        self._repo = repo

    def top_n(self) -> list[Article]:
        return self._repo.top_n()

    def update(self, items: Iterable[Article]) -> None:
        self._repo.replace_top_n(items)


class DBToRedisJob:
    """Rebuilds the sorted set from the top articles in the database."""

    def __init__(
        self, redis_cache: RedisArticleCache, article_service: ArticleService, count: int = DB_TO_REDIS_COUNT
    ) -> None:
        self._redis = redis_cache
        self._service = article_service
        self._count = count

    def run(self) -> None:
        try:
            items = self._service.top_n(self._count)
        except Exception:
            logger.exception("从全局获取获取数据失败")
            return
        try:
            self._redis.sync_rank(items)
        except Exception:
            logger.exception("数据同步到redis失败")


class RedisToLocalJob:
    """Copies the top entries of the sorted set into the local snapshot."""

    def __init__(
        self, redis_cache: RedisArticleCache, local_cache: LocalArticleCache, count: int = REDIS_TO_LOCAL_COUNT
    ) -> None:
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


def init_job(
    article_service: ArticleService, redis_cache: RedisArticleCache, local_cache: LocalArticleCache
) -> Scheduler:
    """Start a scheduler: database to sorted set every two minutes, sorted set to local every minute."""
    scheduler = Scheduler()
    scheduler.add_job("*/2 * * * *", DBToRedisJob(redis_cache, article_service, DB_TO_REDIS_COUNT))
    scheduler.add_job("*/1 * * * *", RedisToLocalJob(redis_cache, local_cache, REDIS_TO_LOCAL_COUNT))
    scheduler.start()
    return scheduler