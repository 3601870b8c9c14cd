"""Weighted round-robin load balancing over separate read and write node pools."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

REQUEST_TYPE = "requestType"
"""Context key whose value 1 marks a request as a write."""


@dataclass
class ServiceNode:
    """A service node reachable at ``url`` with a static ``weight``."""

    url: str
    weight: int
    cur_weight: int = 0


class NoAvailableNodesError(Exception):
    """Raised when no node can be selected."""

    def __init__(self, message: str = "没有可用的节点") -> None:
        super().__init__(message)


class LoadBalancer(ABC):
    """Chooses one node out of a list of candidates."""

    @abstractmethod
    def select(self, nodes: Sequence[ServiceNode]) -> ServiceNode:
        """Return the chosen node or raise :class:`NoAvailableNodesError`."""


class WeightedRoundRobinLoadBalancer(LoadBalancer):
    """Smooth weighted round robin.

    Weights are captured the first time a node list of a given length is seen
    and reset whenever the length changes.
    """

    def __init__(self) -> None:
        self._weights: list[int] = []
        self._current: list[int] = []
        self.last_index = -1

    def select(self, nodes: Sequence[ServiceNode]) -> ServiceNode:
        if not nodes:
            raise NoAvailableNodesError()

        if len(self._weights) != len(nodes):
            self._weights = [node.weight for node in nodes]
            self._current = [0] * len(nodes)
            self.last_index = -1

        total = sum(self._weights)
        self._current = [cur + w for cur, w in zip(self._current, self._weights)]
        if total == 0:
            raise NoAvailableNodesError()

        # max() keeps the first of equal candidates, like a strict ">" scan.
        best = max(range(len(self._current)), key=self._current.__getitem__)
        self._current[best] -= total
        self.last_index = best
        return nodes[best]


class RWWeightClient:
    """Routes requests to write or read nodes, each pool with its own balancer."""

    def __init__(self, read_load_balancer: LoadBalancer, write_load_balancer: LoadBalancer) -> None:
        self._lock = threading.Lock()
        self._write_nodes: list[ServiceNode] = []
        self._read_nodes: list[ServiceNode] = []
        self._read_lb = read_load_balancer
        self._write_lb = write_load_balancer

    def get(self, ctx: Mapping[str, Any] | None = None) -> ServiceNode:
        """Pick a node; ``ctx[REQUEST_TYPE] == 1`` selects the write pool."""
        with self._lock:
            if self._is_write(ctx):
                return self._write_lb.select(self._write_nodes)
            return self._read_lb.select(self._read_nodes)

    def add_read_node(self, node: ServiceNode) -> None:
        with self._lock:
            self._read_nodes.append(node)

    def add_write_node(self, node: ServiceNode) -> None:
        with self._lock:
            self._write_nodes.append(node)

    @staticmethod
    def _is_write(ctx: Mapping[str, Any] | None) -> bool:
        if not ctx:
            return False
        value = ctx.get(REQUEST_TYPE)
        if not isinstance(value, int) or isinstance(value, bool):
            return False
        return value == 1