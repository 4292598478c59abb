"""Store: one store key bound to one JSON backing file.

    store = Store("quickjump", "~/.config/magicstore/quickjump/paths.json",
                  default=lambda: {"version": 1, "paths": []})
    doc = store.load()                  # cached, never raises for bad files
    doc["paths"].append({...})
    store.save(doc)                     # locked, atomic; LockTimeoutError / WriteFailureError
    store.update(lambda d: d["paths"].append({...}))   # read-modify-write, one lock hold

load():  cache hit -> copy; miss -> lock -> RecoveringLoader -> cache -> copy
save():  serialize -> lock -> atomic_write -> re-seed cache -> unlock

get_store() hands out one Store per key per process.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

from magicstore.atomic import atomic_write
from magicstore.cache import ConfigCache
from magicstore.config import StoreSettings
from magicstore.loader import RecoveringLoader
from magicstore.lock import ProcessLock, lock_name
from magicstore.watcher import file_stamp

if TYPE_CHECKING:
    from collections.abc import Callable

    from magicstore.loader import RecoveryEvent

logger = logging.getLogger("magicstore.store")


# ---------------------------------------------------------------------------
# JSON codec
# ---------------------------------------------------------------------------


def json_serialize(doc: Any) -> bytes:
    """UTF-8 (no BOM), 2-space indent, trailing newline."""
    return (json.dumps(doc, indent=2, ensure_ascii=False) + "\n").encode("utf-8")


def json_deserialize(raw: bytes) -> Any:
    # utf-8-sig: tolerate a BOM left by other editors
    return json.loads(raw.decode("utf-8-sig"))


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class Store:
    """Cached, locked, crash-safe JSON document for one store key."""

    def __init__(
        self,
        key: str,
        path: Path | str,
        *,
        serialize: Callable[[Any], bytes] = json_serialize,
        deserialize: Callable[[bytes], Any] = json_deserialize,
        default: Callable[[], Any] = dict,
        normalize: Callable[[Any], Any] | None = None,
        settings: StoreSettings | None = None,
        cache: ConfigCache | None = None,
        lock: ProcessLock | None = None,
        on_corruption: Callable[[RecoveryEvent], None] | None = None,
    ) -> None:
        settings = settings or StoreSettings()
        self.key = key
        self.path = Path(path).expanduser().absolute()
        self.settings = settings
        self._serialize = serialize
        self._lock = lock or ProcessLock(
            settings.lock_dir,
            timeout=settings.lock_timeout,
            poll_interval=settings.lock_poll_interval,
        )
        self._cache = cache or ConfigCache(
            enabled=settings.cache,
            watch=settings.watch,
            poll_interval=settings.watch_poll_interval,
        )
        self._loader = RecoveringLoader(
            self.path,
            deserialize=deserialize,
            serialize=serialize,
            default=default,
            normalize=normalize,
            backups=settings.backups,
            on_corruption=on_corruption,
        )
        self._ensure_dir()
        self._cache.initialize(key, self.path)

    def __repr__(self) -> str:
        return f"Store({self.key!r}, {str(self.path)!r})"

    @property
    def lock_name(self) -> str:
        return lock_name(self.path)

    @property
    def cache(self) -> ConfigCache:
        return self._cache

    @property
    def lock(self) -> ProcessLock:
        return self._lock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def load(self) -> Any:
        """Return a private copy of the document. Never raises for missing/corrupt files."""
        return self._cache.get(self.key, self._locked_read, stamp=self._stamp)

    def save(self, document: Any) -> None:
        """Atomically replace the backing file with document.

        Raises LockTimeoutError or WriteFailureError; on either the file is unchanged.
        """
        data = self._serialize(document)
        # a document that would not load back is rejected before touching disk
        parsed = self._loader.parse(data)
        operation = f"save {self.key}"
        with self._lock.hold(self.path, operation=operation):
            self._write(data, parsed, operation)

    def update(self, fn: Callable[[Any], Any]) -> Any:
        """Read-modify-write under one lock hold. Returns the saved document.

        fn receives a fresh read of the file (never the cached copy) and may
        mutate it in place or return a replacement.
        """
        operation = f"update {self.key}"
        with self._lock.hold(self.path, operation=operation):
            doc = self._loader.load()
            result = fn(doc)
            if result is not None:
                doc = result
            data = self._serialize(doc)
            self._write(data, self._loader.parse(data), operation)
        return doc

    def reload(self) -> Any:
        """Drop the cached copy and load from disk."""
        self._cache.invalidate(self.key)
        return self.load()

    def close(self) -> None:
        """Drop the cache entry and stop the watcher."""
        self._cache.remove(self.key)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _locked_read(self) -> Any:
        return self._lock.with_lock(self.path, self._loader.load, operation=f"load {self.key}")

    def _stamp(self) -> tuple[int, int, int] | None:
        return file_stamp(self.path)

    def _write(self, data: bytes, parsed: Any, operation: str) -> None:
        """Caller holds the lock. parsed is what a re-read of data yields."""
        self._ensure_dir()
        atomic_write(self.path, data, operation=operation)
        self._cache.seed(self.key, parsed, stamp=file_stamp(self.path))
        logger.debug("%s: saved %s", operation, self.path)

    def _ensure_dir(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("cannot create %s: %s", self.path.parent, exc)


# ---------------------------------------------------------------------------
# Process-wide registry
# ---------------------------------------------------------------------------

_stores: dict[str, Store] = {}
_stores_guard = threading.Lock()


def get_store(key: str, path: Path | str, **kwargs: Any) -> Store:
    """Return the Store for key, creating it on first use.

    kwargs are passed to Store() on creation only. Asking for a known key with
    a different path is a ValueError.
    """
    resolved = Path(path).expanduser().absolute()
    with _stores_guard:
        store = _stores.get(key)
        if store is None:
            store = _stores[key] = Store(key, resolved, **kwargs)
        elif store.path != resolved:
            msg = f"store {key!r} is already bound to {store.path}, not {resolved}"
            raise ValueError(msg)
    return store


def reset_stores() -> None:
    """Close and forget every registered store."""
    with _stores_guard:
        stores = list(_stores.values())
        _stores.clear()
    for store in stores:
        store.close()
