"""Host-wide named lock guarding one backing file.

The lock name is the sha256 of the case-folded absolute path, so every process
that points at the same file (through any relative path) contends on the same
lock file without a registry:

    <lock_dir>/<sha256>.lock      # flock(LOCK_EX) target; holder pid inside

flock is dropped by the kernel when the holder dies, so a lock abandoned by a
crashed process is simply acquired by the next caller. The pid left behind in
the lock file is only used to log that this happened.

Within one process, a per-lock-file threading.Lock is taken first so threads
queue locally instead of spinning on flock. A thread that already holds a lock
may enter it again (Store.update loads and saves under one hold).
"""

from __future__ import annotations

import contextlib
import fcntl
import hashlib
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

from magicstore.errors import LockTimeoutError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

logger = logging.getLogger("magicstore.lock")

T = TypeVar("T")

DEFAULT_TIMEOUT = 15.0
DEFAULT_POLL_INTERVAL = 0.05


def lock_name(path: Path | str) -> str:
    """Derive the lock name for a backing file. Deterministic, not reversible."""
    normalized = os.path.normcase(os.path.abspath(os.fspath(path))).casefold()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def default_lock_dir() -> Path:
    # Per-user: a shared dir created by one user would be read-only to the next.
    uid = os.getuid() if hasattr(os, "getuid") else 0
    return Path(tempfile.gettempdir()) / f"magicstore-locks-{uid}"


# ---------------------------------------------------------------------------
# Process-local state, one per lock file
# ---------------------------------------------------------------------------


class _LocalLock:
    __slots__ = ("depth", "mutex", "owner")

    def __init__(self) -> None:
        self.mutex = threading.Lock()
        self.owner: int | None = None
        self.depth = 0


_local_locks: dict[Path, _LocalLock] = {}
_local_locks_guard = threading.Lock()


def _local_lock(lock_file: Path) -> _LocalLock:
    with _local_locks_guard:
        local = _local_locks.get(lock_file)
        if local is None:
            local = _local_locks[lock_file] = _LocalLock()
        return local


def _pid_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True


# ---------------------------------------------------------------------------
# ProcessLock
# ---------------------------------------------------------------------------


class ProcessLock:
    """Cross-process exclusive lock keyed by backing-file path."""

    def __init__(
        self,
        lock_dir: Path | str | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.lock_dir = Path(lock_dir) if lock_dir else default_lock_dir()
        self.timeout = timeout
        self.poll_interval = poll_interval

    def lock_file(self, target: Path | str) -> Path:
        return self.lock_dir / f"{lock_name(target)}.lock"

    def with_lock(
        self,
        target: Path | str,
        fn: Callable[[], T],
        *,
        operation: str = "lock",
        timeout: float | None = None,
    ) -> T:
        """Run fn() while holding the lock for target. Raises LockTimeoutError."""
        with self.hold(target, operation=operation, timeout=timeout):
            return fn()

    @contextlib.contextmanager
    def hold(
        self,
        target: Path | str,
        *,
        operation: str = "lock",
        timeout: float | None = None,
    ) -> Iterator[Path]:
        """Context manager form of with_lock. Yields the lock file path."""
        lock_file = self.lock_file(target)
        local = _local_lock(lock_file)
        me = threading.get_ident()

        if local.owner == me:
            local.depth += 1
            try:
                yield lock_file
            finally:
                local.depth -= 1
            return

        timeout = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        if not local.mutex.acquire(timeout=max(timeout, 0.0)):
            raise LockTimeoutError(path=target, operation=operation, timeout=timeout)
        try:
            fd = self._acquire_flock(lock_file, target, operation, timeout, deadline)
        except BaseException:
            local.mutex.release()
            raise

        local.owner = me
        local.depth = 1
        logger.debug("%s: acquired %s for %s", operation, lock_file.name, target)
        try:
            yield lock_file
        finally:
            local.owner = None
            local.depth = 0
            self._release(fd, lock_file, local)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _acquire_flock(
        self,
        lock_file: Path,
        target: Path | str,
        operation: str,
        timeout: float,
        deadline: float,
    ) -> int:
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(lock_file, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise LockTimeoutError(path=target, operation=operation, timeout=timeout) from None
                    time.sleep(self.poll_interval)
            self._claim(fd, lock_file)
        except BaseException:
            os.close(fd)
            raise
        return fd

    def _claim(self, fd: int, lock_file: Path) -> None:
        """Record our pid; a pid already there means the last holder never released."""
        previous = os.pread(fd, 32, 0).decode("ascii", errors="replace").strip()
        if previous.isdigit() and int(previous) != os.getpid():
            state = "still running" if _pid_running(int(previous)) else "gone"
            logger.info("recovered abandoned lock %s (holder pid %s, %s)", lock_file.name, previous, state)
        os.ftruncate(fd, 0)
        os.pwrite(fd, f"{os.getpid()}\n".encode("ascii"), 0)

    def _release(self, fd: int, lock_file: Path, local: _LocalLock) -> None:
        try:
            os.ftruncate(fd, 0)
            fcntl.flock(fd, fcntl.LOCK_UN)
        except OSError as exc:
            logger.warning("failed to release lock %s: %s", lock_file, exc)
        finally:
            try:
                os.close(fd)
            except OSError as exc:
                logger.warning("failed to close lock %s: %s", lock_file, exc)
            local.mutex.release()
        logger.debug("released %s", lock_file.name)
