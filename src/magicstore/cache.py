"""In-process read-through cache of store documents.

One ConfigCache per Store (no module-level state), keyed by store key:

    cache.initialize("quickjump", path)      # entry + ChangeWatcher
    doc = cache.get("quickjump", loader, stamp=lambda: file_stamp(path))
    cache.invalidate("quickjump")            # next get() calls loader again

Callers always get a deep copy; the cached document is never handed out.

An entry is served only while it is fresh and, if a stamp function is given,
the file's current stamp matches the one taken before the cached read. A
watcher event or an explicit invalidate() bumps the entry's generation, so a
load that was already running when the file changed is not cached as fresh.
A watcher event whose file stamp equals the seeded one (our own save) keeps
the entry.
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from magicstore.watcher import ChangeWatcher, Stamp, file_stamp

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

logger = logging.getLogger("magicstore.cache")


@dataclass
class CacheEntry:
    key: str
    path: Path | None = None
    data: Any = None
    fresh: bool = False
    valid_as_of: datetime | None = None
    stamp: Stamp | None = None
    generation: int = 0
    watcher: ChangeWatcher | None = None


class ConfigCache:
    """Map of store key -> CacheEntry, invalidated by watchers or explicit calls."""

    def __init__(
        self,
        *,
        enabled: bool = True,
        watch: bool = True,
        poll_interval: float = 1.0,
        use_inotify: bool = True,
    ) -> None:
        self.enabled = enabled
        self.watch = watch
        self.poll_interval = poll_interval
        self.use_inotify = use_inotify
        self._entries: dict[str, CacheEntry] = {}
        # guards the dict only; loaders run outside it
        self._guard = threading.Lock()

    def __contains__(self, key: str) -> bool:
        with self._guard:
            return key in self._entries

    def entry(self, key: str) -> CacheEntry | None:
        """The live entry for key (for inspection; do not mutate)."""
        with self._guard:
            return self._entries.get(key)

    def is_fresh(self, key: str) -> bool:
        with self._guard:
            entry = self._entries.get(key)
            return entry is not None and entry.fresh

    # ------------------------------------------------------------------
    # Watchers
    # ------------------------------------------------------------------

    def initialize(self, key: str, path: Path) -> bool:
        """Create the entry for key and (re)start its watcher. Returns True if watching."""
        with self._guard:
            entry = self._entries.setdefault(key, CacheEntry(key))
            entry.path = path
            if not self.watch:
                return False
            watcher = entry.watcher
            if watcher is not None and watcher.active:
                return True
            entry.watcher = ChangeWatcher(
                path,
                key,
                self._on_file_change,
                poll_interval=self.poll_interval,
                use_inotify=self.use_inotify,
            )
        if watcher is not None:
            watcher.dispose()
        return entry.watcher.start()

    def remove(self, key: str) -> None:
        """Drop the entry for key and dispose its watcher."""
        with self._guard:
            entry = self._entries.pop(key, None)
        if entry is not None and entry.watcher is not None:
            entry.watcher.dispose()

    def close(self) -> None:
        with self._guard:
            keys = list(self._entries)
        for key in keys:
            self.remove(key)

    # ------------------------------------------------------------------
    # Read / write-through
    # ------------------------------------------------------------------

    def get(
        self,
        key: str,
        loader: Callable[[], Any],
        *,
        stamp: Callable[[], Stamp | None] | None = None,
    ) -> Any:
        """Return a copy of the cached document, calling loader() on a miss."""
        observed = stamp() if stamp is not None else None
        with self._guard:
            entry = self._entries.setdefault(key, CacheEntry(key))
            if self.enabled and entry.fresh:
                if stamp is None or entry.stamp == observed:
                    logger.debug("cache hit: %s", key)
                    return copy.deepcopy(entry.data)
                logger.debug("cache stale (file changed on disk): %s", key)
            generation = entry.generation

        data = loader()
        logger.debug("cache miss: %s (loaded)", key)

        if self.enabled:
            with self._guard:
                entry = self._entries.get(key)
                if entry is not None and entry.generation == generation:
                    self._store(entry, data, observed)
        return copy.deepcopy(data)

    def seed(self, key: str, data: Any, *, stamp: Stamp | None = None) -> None:
        """Store data as the fresh value for key (after a successful save)."""
        if not self.enabled:
            return
        with self._guard:
            entry = self._entries.setdefault(key, CacheEntry(key))
            entry.generation += 1
            self._store(entry, data, stamp)

    def invalidate(self, key: str) -> None:
        """Mark key stale. No reload happens until the next get(). Idempotent."""
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                return
            entry.generation += 1
            if entry.fresh:
                logger.debug("invalidated: %s", key)
            entry.fresh = False
            entry.data = None
            entry.stamp = None

    def invalidate_all(self) -> None:
        with self._guard:
            keys = list(self._entries)
        for key in keys:
            self.invalidate(key)

    def _on_file_change(self, key: str) -> None:
        """Watcher callback. Events from our own save (stamp already seeded) are ignored."""
        with self._guard:
            entry = self._entries.get(key)
            path = entry.path if entry is not None else None
        current = file_stamp(path) if path is not None else None
        with self._guard:
            entry = self._entries.get(key)
            if entry is not None and entry.fresh and entry.stamp is not None and entry.stamp == current:
                logger.debug("change to %s already cached, keeping", key)
                return
        self.invalidate(key)

    @staticmethod
    def _store(entry: CacheEntry, data: Any, stamp: Stamp | None) -> None:
        entry.data = copy.deepcopy(data)
        entry.stamp = stamp
        entry.fresh = True
        entry.valid_as_of = datetime.now(UTC)
