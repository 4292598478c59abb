"""Deserialize a backing file, recovering from corruption instead of failing.

    missing file            -> default document (file is not created)
    empty file              -> default document
    unreadable (EACCES...)  -> default document, file left alone
    parse/normalize error   -> bytes saved to <name>.backup.<YYYYMMDDTHHMMSS>,
                               atomically reset to the default, return it

load() never raises for any of these. Backups are never overwritten; two in the
same second get a -1, -2, ... suffix.
"""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from magicstore.atomic import atomic_write
from magicstore.errors import WriteFailureError

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger("magicstore.loader")

BACKUP_TIME_FORMAT = "%Y%m%dT%H%M%S"


@dataclass(frozen=True)
class RecoveryEvent:
    """Emitted once per corrupted read."""

    path: Path
    backup: Path | None
    reason: str
    reset: bool


def write_backup(path: Path, data: bytes, when: datetime) -> Path:
    """Write data to the first free <name>.backup.<timestamp>[-N] next to path.

    Names are claimed with O_EXCL, so a backup that appears concurrently is
    skipped rather than overwritten.
    """
    base = path.with_name(f"{path.name}.backup.{when.strftime(BACKUP_TIME_FORMAT)}")
    candidate = base
    n = 1
    while True:
        try:
            f = candidate.open("xb")
        except FileExistsError:
            candidate = base.with_name(f"{base.name}-{n}")
            n += 1
            continue
        try:
            with f:
                f.write(data)
        except BaseException:
            with contextlib.suppress(OSError):
                candidate.unlink()
            raise
        return candidate


def list_backups(path: Path) -> list[Path]:
    """Backups of path, oldest first."""
    if not path.parent.is_dir():
        return []
    return sorted(path.parent.glob(f"{path.name}.backup.*"))


class RecoveringLoader:
    """Reads one backing file; see module docstring for the failure table."""

    def __init__(
        self,
        path: Path,
        *,
        deserialize: Callable[[bytes], Any],
        serialize: Callable[[Any], bytes],
        default: Callable[[], Any],
        normalize: Callable[[Any], Any] | None = None,
        backups: bool = True,
        on_corruption: Callable[[RecoveryEvent], None] | None = None,
    ) -> None:
        self.path = path
        self.backups = backups
        self._deserialize = deserialize
        self._serialize = serialize
        self._default = default
        self._normalize = normalize
        self._on_corruption = on_corruption

    def default(self) -> Any:
        return self._default()

    def parse(self, raw: bytes) -> Any:
        """Deserialize + normalize. Raises on bad input."""
        doc = self._deserialize(raw)
        if self._normalize is not None:
            doc = self._normalize(doc)
        return doc

    def load(self) -> Any:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return self.default()
        except OSError as exc:
            logger.warning("cannot read %s (%s); using an empty document", self.path, exc)
            return self.default()

        if not raw.strip():
            return self.default()

        try:
            return self.parse(raw)
        except Exception as exc:
            # any parse failure is corruption, RecursionError included
            return self._recover(raw, f"{type(exc).__name__}: {exc}")

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _recover(self, raw: bytes, reason: str) -> Any:
        logger.warning("corrupted store file %s (%s); backing up and resetting", self.path, reason)

        backup: Path | None = None
        if self.backups:
            try:
                backup = write_backup(self.path, raw, datetime.now(UTC))
            except OSError as exc:
                logger.warning("could not back up %s: %s", self.path, exc)
                backup = None

        doc = self.default()
        try:
            atomic_write(self.path, self._serialize(doc), operation="reset")
            reset = True
            logger.info("reset %s to an empty document (backup: %s)", self.path, backup)
        except WriteFailureError as exc:
            reset = False
            logger.error("could not reset corrupted %s: %s", self.path, exc)

        if self._on_corruption is not None:
            try:
                self._on_corruption(RecoveryEvent(self.path, backup, reason, reset))
            except Exception:
                logger.exception("corruption callback failed for %s", self.path)
        return self.default()
