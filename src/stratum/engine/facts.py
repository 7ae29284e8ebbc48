"""
Stratum Fact Store

Per-host snapshots of runtime-discovered facts. Facts are collected by
an injected async collector (the transport-specific setup step), kept
for the rest of the run, and optionally persisted to a JSON cache with
a time-to-live.

Writes are serialized per host: each host key has its own asyncio.Lock,
so two gathers for the same host never race while different hosts
gather independently.
"""

from __future__ import annotations

import asyncio
import copy
import fnmatch
import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

from stratum.engine.errors import CollectionError
from stratum.platform.fs import atomic_write, remove_if_exists
from stratum.platform.locks import file_lock

if TYPE_CHECKING:
    from stratum.inventory.host import Host

logger = logging.getLogger(__name__)

FactFilter = Union[str, Sequence[str], None]
Collector = Callable[['Host', FactFilter], Awaitable[Mapping[str, Any]]]


@dataclass(frozen=True)
class FactSnapshot:
    """Facts captured for exactly one host at one point in time."""

    host: str
    facts: Mapping[str, Any] = field(default_factory=dict)
    gathered_at: float = 0.0

    @classmethod
    def capture(cls, host: str, facts: Mapping[str, Any], gathered_at: Optional[float] = None) -> 'FactSnapshot':
        """Freeze a copy of ``facts``."""
        return cls(
            host=host,
            facts=MappingProxyType(copy.deepcopy(dict(facts))),
            gathered_at=time.time() if gathered_at is None else gathered_at,
        )

    def __getitem__(self, key: str) -> Any:
        return self.facts[key]

    def __contains__(self, key: object) -> bool:
        return key in self.facts

    def get(self, key: str, default: Any = None) -> Any:
        return self.facts.get(key, default)

    def keys(self) -> List[str]:
        return list(self.facts.keys())

    def to_dict(self) -> Dict[str, Any]:
        """Deep copy of the facts as a plain dictionary."""
        return copy.deepcopy(dict(self.facts))

    def age(self, now: Optional[float] = None) -> float:
        return (time.time() if now is None else now) - self.gathered_at


def apply_fact_filter(facts: Mapping[str, Any], fact_filter: FactFilter) -> Dict[str, Any]:
    """Keep only fact keys matching the fnmatch pattern(s) in ``fact_filter``."""
    if not fact_filter:
        return dict(facts)
    patterns = [fact_filter] if isinstance(fact_filter, str) else list(fact_filter)
    return {
        key: value for key, value in facts.items()
        if any(fnmatch.fnmatchcase(key, pattern) for pattern in patterns)
    }


class FactCache:
    """
    Persistent fact cache, one JSON file per host.

    An entry older than ``ttl`` seconds is treated as absent. A ttl of 0
    disables expiry.
    """

    SAFE_NAME = re.compile(r'[^A-Za-z0-9._-]')

    def __init__(self, directory: str, ttl: int = 86400):
        self.directory = os.path.expanduser(directory)
        self.ttl = ttl

    def path_for(self, host: str) -> str:
        return os.path.join(self.directory, self.SAFE_NAME.sub('_', host) + '.json')

    def load(self, host: str) -> Optional[FactSnapshot]:
        """Return the cached snapshot if present and within TTL."""
        path = self.path_for(host)
        if not os.path.exists(path):
            return None
        try:
            with open(path, 'r', encoding='utf-8') as handle:
                entry = json.load(handle)
            gathered_at = float(entry['gathered_at'])
            facts = entry['facts']
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable fact cache entry %s: %s", path, e)
            return None

        if self.ttl and time.time() - gathered_at > self.ttl:
            logger.debug("Fact cache entry for %s expired", host)
            return None
        return FactSnapshot.capture(host, facts, gathered_at=gathered_at)

    def store(self, snapshot: FactSnapshot) -> None:
        """Write a snapshot, replacing any earlier entry."""
        path = self.path_for(snapshot.host)
        payload = json.dumps(
            {'host': snapshot.host, 'gathered_at': snapshot.gathered_at, 'facts': snapshot.to_dict()},
            default=str,
            sort_keys=True,
        )
        with file_lock(path + '.lock', timeout=10):
            atomic_write(path, payload)

    def evict(self, host: str) -> bool:
        path = self.path_for(host)
        with file_lock(path + '.lock', timeout=10):
            return remove_if_exists(path)


class FactStore:
    """
    Fact snapshots for the hosts of one run.

    A snapshot, once gathered, is reused until invalidate() or regather()
    runs for that host.
    """

    def __init__(self, cache: Optional[FactCache] = None):
        self.cache = cache
        self._snapshots: Dict[str, FactSnapshot] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, host_name: str) -> asyncio.Lock:
        lock = self._locks.get(host_name)
        if lock is None:
            lock = self._locks[host_name] = asyncio.Lock()
        return lock

    async def _cache_call(self, method: Callable[..., Any], *args: Any) -> Any:
        # Blocking cache I/O runs in the default executor
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, method, *args)

    def get(self, host: Union[str, 'Host']) -> Optional[FactSnapshot]:
        """The host's snapshot, or None if it has not been gathered."""
        return self._snapshots.get(_name_of(host))

    def gathered_hosts(self) -> List[str]:
        return list(self._snapshots)

    async def gather(
        self,
        host: 'Host',
        collector: Collector,
        fact_filter: FactFilter = None,
    ) -> FactSnapshot:
        """
        Return the host's snapshot, collecting it if needed.

        Order of sources: the snapshot already gathered in this run, then a
        live cache entry, then the collector.

        Raises:
            CollectionError: The collector failed or returned a non-mapping.
        """
        name = host.name
        async with self._lock_for(name):
            snapshot = self._snapshots.get(name)
            if snapshot is not None:
                return snapshot

            if self.cache is not None:
                snapshot = await self._cache_call(self.cache.load, name)
                if snapshot is not None:
                    logger.debug("Fact cache hit for %s", name)
                    self._snapshots[name] = snapshot
                    return snapshot

            logger.debug("Gathering facts for %s", name)
            try:
                raw = await collector(host, fact_filter)
            except CollectionError:
                raise
            except Exception as e:
                raise CollectionError(name, str(e) or type(e).__name__) from e

            if not isinstance(raw, Mapping):
                raise CollectionError(name, f"collector returned {type(raw).__name__}, expected a mapping")

            snapshot = FactSnapshot.capture(name, apply_fact_filter(raw, fact_filter))
            self._snapshots[name] = snapshot
            if self.cache is not None:
                await self._cache_call(self.cache.store, snapshot)
            return snapshot

    async def invalidate(self, host: Union[str, 'Host']) -> None:
        """Drop the host's snapshot (and cache entry) so the next gather collects again."""
        name = _name_of(host)
        async with self._lock_for(name):
            self._snapshots.pop(name, None)
            if self.cache is not None:
                await self._cache_call(self.cache.evict, name)

    async def regather(
        self,
        host: 'Host',
        collector: Collector,
        fact_filter: FactFilter = None,
    ) -> FactSnapshot:
        """Explicit re-gather: replace the host's snapshot with fresh facts."""
        await self.invalidate(host)
        return await self.gather(host, collector, fact_filter)


def _name_of(host: Union[str, 'Host']) -> str:
    return host if isinstance(host, str) else host.name
