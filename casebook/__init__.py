"""Worked backend engineering cases: balancing, retry, rate limiting, scheduling, ranking, caching, coupons and consumers."""

__version__ = "0.1.0"