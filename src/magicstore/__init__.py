"""Crash-safe JSON stores shared by several shell tools.

Each store is one JSON file; any number of processes may read and write it:

    <data_dir>/quickjump/paths.json
    <data_dir>/quickjump/paths.json.backup.20260101T120000   # after corruption
    <tempdir>/magicstore-locks-<uid>/<sha256 of path>.lock   # flock target

Writes take an exclusive flock, go to a temp file in the same directory and
are renamed into place. Reads are cached per process and invalidated by an
inotify watcher (or stat polling) plus a stat check on every hit. A file that
no longer parses is copied aside and reset to an empty document.
"""

from magicstore.cache import CacheEntry, ConfigCache
from magicstore.config import StoreSettings, load_settings
from magicstore.domains import DOMAINS, StoreDomain, open_domain
from magicstore.errors import LockTimeoutError, StoreError, WriteFailureError
from magicstore.loader import RecoveringLoader, RecoveryEvent
from magicstore.lock import ProcessLock, lock_name
from magicstore.store import Store, get_store, json_deserialize, json_serialize, reset_stores
from magicstore.watcher import ChangeWatcher

__all__ = [
    "DOMAINS",
    "CacheEntry",
    "ChangeWatcher",
    "ConfigCache",
    "LockTimeoutError",
    "ProcessLock",
    "RecoveringLoader",
    "RecoveryEvent",
    "Store",
    "StoreDomain",
    "StoreError",
    "StoreSettings",
    "WriteFailureError",
    "get_store",
    "json_deserialize",
    "json_serialize",
    "load_settings",
    "lock_name",
    "open_domain",
    "reset_stores",
]
