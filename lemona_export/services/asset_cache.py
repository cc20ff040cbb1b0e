"""Bounded cache of resolved source assets for one export job.

The orchestrator creates one AssetCache per job, passes it by reference to the
asset resolver and closes it when the job scope ends. Entries are leased while
the job uses them. When the cache is over its entry or byte budget, the least
recently used entries without leases are evicted. Concurrent requests for the
same key are coalesced, so each source is fetched once.
"""

import asyncio
import hashlib
import logging
import os
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

from lemona_export.exceptions import AssetCacheFullError

logger = logging.getLogger(__name__)


@dataclass
class CachedAsset:
    key: str
    path: str
    size_bytes: int
    owned: bool  # True when the cache created the file and must delete it
    has_audio: bool | None = None
    leases: int = 0


AssetLoader = Callable[[str], Awaitable[CachedAsset]]


class AssetCache:
    def __init__(self, directory: str, max_entries: int = 256, max_bytes: int = 8 * 1024**3):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self._entries: OrderedDict[str, CachedAsset] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def path_for(self, key: str) -> str:
        """Stable download location for a key, keeping the source's extension."""
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]
        suffix = Path(urlparse(key).path).suffix[:8]
        return str(self.directory / f"{digest}{suffix}")

    @property
    def total_bytes(self) -> int:
        return sum(entry.size_bytes for entry in self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    async def acquire(self, key: str, loader: AssetLoader) -> CachedAsset:
        """Return the entry for key, loading it on first use, and take a lease.

        Args:
            key: Source reference (URL or path)
            loader: Called with the target path when the key is not cached

        Raises:
            AssetCacheFullError: If the new entry cannot fit after eviction
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            entry = self._entries.get(key)
            if entry is not None:
                self.hits += 1
            else:
                self.misses += 1
                entry = await loader(self.path_for(key))
                self._entries[key] = entry
                try:
                    self._make_room(keep=key)
                except AssetCacheFullError:
                    self._drop(key)
                    raise
            self._entries.move_to_end(key)
            entry.leases += 1
            return entry

    def release(self, key: str) -> None:
        entry = self._entries.get(key)
        if entry is not None and entry.leases > 0:
            entry.leases -= 1

    def _over_budget(self) -> bool:
        return len(self._entries) > self.max_entries or self.total_bytes > self.max_bytes

    def _make_room(self, keep: str) -> None:
        """Evict least recently used unleased entries until within budget."""
        for key in list(self._entries):
            if not self._over_budget():
                return
            entry = self._entries[key]
            if key == keep or entry.leases > 0:
                continue
            logger.info(f"[ASSETS] evicting {key} ({entry.size_bytes} bytes)")
            self._drop(key)
            self.evictions += 1

        if self._over_budget():
            raise AssetCacheFullError(
                keep,
                f"{len(self._entries)}/{self.max_entries} entries, {self.total_bytes}/{self.max_bytes} bytes",
            )

    def _drop(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None and entry.owned and os.path.exists(entry.path):
            os.remove(entry.path)

    def close(self) -> None:
        """Delete every file the cache downloaded."""
        for key in list(self._entries):
            self._drop(key)
        self._locks.clear()
        logger.debug(f"[ASSETS] cache closed (hits={self.hits}, misses={self.misses}, evictions={self.evictions})")
