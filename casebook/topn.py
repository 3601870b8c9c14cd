"""Selecting the overall top entries from several descending-sorted lists."""

from __future__ import annotations

import heapq
from collections.abc import Callable, Iterable
from itertools import islice
from typing import Any, TypeVar

T = TypeVar("T")


def top_n(lists: Iterable[Iterable[T]], n: int, key: Callable[[T], Any]) -> list[T]:
    """Return the ``n`` largest items by ``key`` across lists each sorted descending."""
    merged = heapq.merge(*lists, key=key, reverse=True)
    return list(islice(merged, max(n, 0)))