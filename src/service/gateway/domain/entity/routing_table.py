"""
Routing Table - route prefix -> live upstream instances

Instances come from periodic registry renewals. An instance missing from
`max_missed_renewals` consecutive renewals is dropped; appearing again resets
its count. Writers serialize on a lock and publish a fresh immutable snapshot,
so resolve() never blocks on a refresh.

Resolution is longest-prefix match on path segment boundaries, then
round-robin across the route's instances.
"""

import itertools
import threading
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, Mapping, Tuple

from src.platform.exception.exceptions import NotFoundError, ServiceUnavailableError
from src.platform.logging.loguru_io import Logger


def _normalize_prefix(prefix: str) -> str:
    prefix = '/' + prefix.strip('/')
    return prefix


def _matches(path: str, prefix: str) -> bool:
    if prefix == '/':
        return True
    return path == prefix or path.startswith(prefix + '/')


class RoutingTable:
    def __init__(self, *, max_missed_renewals: int) -> None:
        self.max_missed_renewals = max_missed_renewals
        self._lock = threading.Lock()
        # prefix -> {instance: consecutive missed renewals}, insertion ordered
        self._missed: Dict[str, Dict[str, int]] = {}
        self._declared: set[str] = set()
        self._snapshot: Mapping[str, Tuple[str, ...]] = MappingProxyType({})
        self._cursors: Dict[str, Iterator[int]] = {}

    def snapshot(self) -> Mapping[str, Tuple[str, ...]]:
        return self._snapshot

    def apply_renewal(self, registrations: Mapping[str, Iterable[str]]) -> None:
        renewed = {
            _normalize_prefix(prefix): list(dict.fromkeys(instances))
            for prefix, instances in registrations.items()
        }
        with self._lock:
            self._declared = set(renewed)
            for prefix in set(self._missed) | set(renewed):
                counts = self._missed.setdefault(prefix, {})
                alive = renewed.get(prefix, [])
                for instance in alive:
                    counts[instance] = 0
                for instance in [i for i in counts if i not in alive]:
                    counts[instance] += 1
                    if counts[instance] >= self.max_missed_renewals:
                        del counts[instance]
                        Logger.base.warning(
                            f'🧭 [ROUTING] {instance} dropped from {prefix} after '
                            f'{self.max_missed_renewals} missed renewals'
                        )
                if not counts and prefix not in self._declared:
                    del self._missed[prefix]

            self._snapshot = MappingProxyType(
                {
                    prefix: tuple(counts)
                    for prefix, counts in sorted(
                        self._missed.items(), key=lambda item: len(item[0]), reverse=True
                    )
                }
            )

    def resolve(self, path: str) -> Tuple[str, str]:
        """Returns (route prefix, upstream base URL) for a request path."""
        snapshot = self._snapshot
        # Snapshot keys are ordered longest first
        for prefix, instances in snapshot.items():
            if not _matches(path, prefix):
                continue
            if not instances:
                raise ServiceUnavailableError(f'No healthy instance for {prefix}')
            cursor = self._cursors.get(prefix)
            if cursor is None:
                cursor = self._cursors.setdefault(prefix, itertools.count())
            return prefix, instances[next(cursor) % len(instances)]
        raise NotFoundError(f'No route for {path}')
