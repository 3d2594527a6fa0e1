from __future__ import annotations

import heapq
from typing import Iterable, Mapping

from .errors import ConfigError, CycleError


class DependencyGraph:
    """Immutable DAG of service dependencies.

    ``edges`` maps each service to the services that must be healthy before it
    starts. The topological order is computed once here; a cycle raises
    :class:`CycleError`.
    """

    def __init__(self, edges: Mapping[str, Iterable[str]]):
        deps: dict[str, frozenset[str]] = {name: frozenset(d) for name, d in edges.items()}
        for name, ds in deps.items():
            unknown = sorted(ds - deps.keys())
            if unknown:
                raise ConfigError(f"Service '{name}' depends on unknown service(s): {', '.join(unknown)}")
        self._deps = deps
        self._dependents: dict[str, frozenset[str]] = {
            name: frozenset(other for other, ds in deps.items() if name in ds) for name in deps
        }
        self._order = self._compute_order()

    @property
    def services(self) -> list[str]:
        return sorted(self._deps)

    def dependencies_of(self, name: str) -> frozenset[str]:
        return self._deps[name]

    def dependents_of(self, name: str) -> frozenset[str]:
        return self._dependents[name]

    def all_dependencies_of(self, name: str) -> frozenset[str]:
        return self._closure(name, self._deps)

    def all_dependents_of(self, name: str) -> frozenset[str]:
        """Every service whose dependency path reaches ``name``."""
        return self._closure(name, self._dependents)

    def topological_order(self) -> list[str]:
        return list(self._order)

    @staticmethod
    def _closure(name: str, edges: Mapping[str, frozenset[str]]) -> frozenset[str]:
        seen: set[str] = set()
        stack = list(edges[name])
        while stack:
            node = stack.pop()
            if node not in seen:
                seen.add(node)
                stack.extend(edges[node])
        return frozenset(seen)

    def _compute_order(self) -> list[str]:
        # Kahn's algorithm; the heap keeps ties in name order so runs are reproducible.
        remaining = {name: len(ds) for name, ds in self._deps.items()}
        ready = [name for name, n in remaining.items() if n == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            name = heapq.heappop(ready)
            order.append(name)
            for dependent in self._dependents[name]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, dependent)
        if len(order) != len(self._deps):
            raise CycleError(self._find_cycle({n for n, k in remaining.items() if k > 0}))
        return order

    def _find_cycle(self, stuck: set[str]) -> list[str]:
        # Every stuck node has a stuck dependency, so walking dependencies must revisit a node.
        node = min(stuck)
        path: list[str] = []
        index: dict[str, int] = {}
        while node not in index:
            index[node] = len(path)
            path.append(node)
            node = min(d for d in self._deps[node] if d in stuck)
        return path[index[node]:] + [node]
