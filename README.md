# casebook

Small, self-contained building blocks that show common backend engineering
techniques, each with working code and tests. The package has no
third-party runtime dependencies; storage uses the standard `sqlite3`
module and HTTP uses `urllib` and `wsgiref`.

## What is inside

| Module | What it gives you |
| --- | --- |
| `casebook.loadbalancer` | `ServiceNode`, the `LoadBalancer` interface, a smooth `WeightedRoundRobinLoadBalancer`, and `RWWeightClient`. `RWWeightClient.get(ctx)` uses the write pool when `ctx["requestType"] == 1` and the read pool otherwise. `NoAvailableNodesError` is raised when there is nothing to pick or all weights are zero. |
| `casebook.retry` | Adaptive retry strategies that wrap another `Strategy`, whose `next(err)` returns `(delay_seconds, should_retry)`. `NormalAdaptiveStrategy` keeps a time-based sliding window (`counts()` gives successes and failures in it). `UpgradeAdaptiveStrategy` keeps a 1024-slot bit ring (`failed_count()`). Both stop retrying failures once too many recent requests have failed. |
| `casebook.limiter` | `VipLimiter`, a three-state limiter (`State.HEALTHY`, `State.RATE_LIMIT`, `State.RECOVERING`). VIP requests (`ctx["vip"] == 1`) always pass; others are rejected under load and let back in at a rising pass rate. Samples can be fed by hand with `observe(qps)` or read from a `Monitor` in a background thread with `start()` / `stop()`. `RateLimitMonitor` counts in-flight requests. |
| `casebook.middleware` | `RateLimitBuilder(monitor, limiter).build()` returns WSGI middleware that counts in-flight requests, marks requests carrying a `vip` header as VIP, and answers limited requests with status 500. Also `ctx_with_vip`, the demo `biz_app` (`GET /ratelimit`, sleeps 0.5–1.5 s), `start_server(addr, *middlewares)` and `main`. |
| `casebook.cron` | A minute-resolution `Scheduler` (`add_job`, `due_jobs`, `start`, `stop`) and `parse_spec` for five-field cron expressions, month and weekday names, and `@hourly`-style descriptors. Jobs are objects with `run()` or plain callables. |
| `casebook.topn` | `top_n(lists, n, key)`, which merges lists each sorted in descending order and returns the overall first *n* items. |
| `casebook.rank` | A leaderboard whose scores are spread over ten sorted sets (`RedisRankCache`). `RedisToLocalJob` copies the top 100 into a `LocalRankCache`; `RankService` reads the local copy and writes scores to the sorted sets. `init_job` schedules the copy every minute. |
| `casebook.articles` | Article like-count statistics split across two SQLite tables by `article_id % 2` (`ArticleStaticDAO`), with ids from a `SnowflakeNode`. `ArticleService` works in `Article` values. |
| `casebook.article_rank` | An article leaderboard in one sorted set (`RedisArticleCache`), a database → sorted-set job (`DBToRedisJob`, top 1000) and a sorted-set → local job (`RedisToLocalJob`, top 100). `init_job` schedules them every two minutes and every minute. |
| `casebook.order_cache` | `Order`, the `Cache` interface, `LocalOrderCache`, `RedisOrderCache` (JSON under `order:<id>`), and `MixedOrderCache`, which switches to the local cache after a failed `probe()` and back after three successful ones. `CacheStrategy` chooses whether writes always go to the local cache too. Misses raise `KeyNotFoundError`. |
| `casebook.orders` | `OrderDAO` over an SQLite `orders` table, plus `OrderRepository` and `OrderService` with cache-aside reads and cache invalidation on save. Missing rows raise `OrderNotFoundError`. |
| `casebook.coupon` | Coupon stock sharded over several counters (`RedisCoupon`), a Bloom filter so each user succeeds at most once, and `CouponService`, which rejects requests at random (50 % at first, 10 points less per 10,000 coupons taken). Running out raises `InsufficientCouponError` inside the repository; `preempt` returns False. |
| `casebook.consumers` | `Message`, the `Reader` interface and `post_json`. `SyncConsumer` handles messages one by one; `AsyncConsumer` handles a batch concurrently and commits its last message; `BatchConsumer` posts a batch as one JSON array and commits it. Each `consume(stop)` runs until the `threading.Event` is set. |

## Examples

Weighted round robin across read and write pools:

```python
from casebook.loadbalancer import RWWeightClient, ServiceNode, WeightedRoundRobinLoadBalancer

client = RWWeightClient(WeightedRoundRobinLoadBalancer(), WeightedRoundRobinLoadBalancer())
client.add_read_node(ServiceNode("r1.example.com", 20))
client.add_write_node(ServiceNode("w1.example.com", 25))
client.get({})                    # a read node
client.get({"requestType": 1})    # a write node
```

Merging sorted lists to get the overall top entries:

```python
from casebook.topn import top_n

best = top_n([[9, 4, 1], [8, 7], [6]], 4, key=lambda x: x)
# [9, 8, 7, 6]
```

## Running the demo server

The package installs one command. It serves the demo business endpoint
behind the VIP rate-limiting middleware:

```
casebook-server --addr :8080 --qps-limit 1000
```

Both options shown are the defaults. Requests that send a non-empty `vip`
header are never limited. Other requests are refused while the number of
in-flight requests stays at or above the limit, and are let back in step by
step as load falls.

## What the package does not do

- It ships no Redis client. The Redis-backed classes take any `client`
  object offering the methods named in their docstrings (for example a
  client from the `redis` distribution); `RedisCoupon` also needs a server
  with the Bloom filter `BF.ADD` command.
- It ships no message-broker client. The consumers read from any
  implementation of `casebook.consumers.Reader` that you provide.
- Database storage is SQLite only; you pass in an `sqlite3.Connection`.

## Tests

```
pip install -e ".[test]"
pytest
```