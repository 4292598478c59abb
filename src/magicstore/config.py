"""StoreSettings: engine tuning shared by every store in a process.

Loaded from a TOML file (default ~/.config/magicstore/magicstore.toml):

    [store]
    data_dir = "~/.config/magicstore"   # root of the built-in domain stores
    lock_dir = ""                       # "" = <tempdir>/magicstore-locks-<uid>
    lock_timeout = 15.0                 # seconds before LockTimeoutError
    lock_poll_interval = 0.05
    watch = true                        # ChangeWatcher per store
    watch_poll_interval = 1.0           # used when inotify is unavailable
    cache = true
    backups = true                      # copy corrupted files aside before reset

Relative paths are resolved against the directory holding the TOML file.
No environment variables are read.
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from magicstore.lock import DEFAULT_POLL_INTERVAL, DEFAULT_TIMEOUT

_CONFIG_FILENAME = "magicstore.toml"
_DEFAULT_DATA_DIR = "~/.config/magicstore"


@dataclass
class StoreSettings:
    """Resolved engine settings."""

    data_dir: Path = field(default_factory=lambda: Path(_DEFAULT_DATA_DIR).expanduser())
    lock_dir: Path | None = None            # None = default_lock_dir()
    lock_timeout: float = DEFAULT_TIMEOUT
    lock_poll_interval: float = DEFAULT_POLL_INTERVAL
    watch: bool = True
    watch_poll_interval: float = 1.0
    cache: bool = True
    backups: bool = True

    def __post_init__(self) -> None:
        if self.lock_timeout < 0:
            msg = f"lock_timeout must be >= 0, got {self.lock_timeout}"
            raise ValueError(msg)
        if self.lock_poll_interval <= 0 or self.watch_poll_interval <= 0:
            msg = "poll intervals must be > 0"
            raise ValueError(msg)


def default_config_path() -> Path:
    return Path(_DEFAULT_DATA_DIR).expanduser() / _CONFIG_FILENAME


def _resolve(base: Path, value: str) -> Path:
    p = Path(value).expanduser()
    return p if p.is_absolute() else base / p


def load_settings(path: Path | str | None = None) -> StoreSettings:
    """Load [store] from path. None or a missing file gives the defaults."""
    if path is None:
        return StoreSettings()
    config_path = Path(path).expanduser()
    if not config_path.exists():
        return StoreSettings()

    with config_path.open("rb") as f:
        raw: dict[str, Any] = tomllib.load(f)
    section = raw.get("store", {})
    base = config_path.parent.resolve()
    defaults = StoreSettings()

    data_dir = section.get("data_dir")
    lock_dir = section.get("lock_dir") or None

    return StoreSettings(
        data_dir=_resolve(base, data_dir) if data_dir else defaults.data_dir,
        lock_dir=_resolve(base, lock_dir) if lock_dir else None,
        lock_timeout=float(section.get("lock_timeout", defaults.lock_timeout)),
        lock_poll_interval=float(section.get("lock_poll_interval", defaults.lock_poll_interval)),
        watch=bool(section.get("watch", defaults.watch)),
        watch_poll_interval=float(section.get("watch_poll_interval", defaults.watch_poll_interval)),
        cache=bool(section.get("cache", defaults.cache)),
        backups=bool(section.get("backups", defaults.backups)),
    )
