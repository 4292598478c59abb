"""Per-file change watcher: tells the cache a store key went stale.

Watches the parent directory with inotify (inotify_simple) filtered to one
file name, on a daemon thread. Falls back to polling stat() every
`poll_interval` seconds if inotify_simple is unavailable (macOS, Docker).

Best effort only. Correctness rests on the lock and the atomic write; the
watcher just saves a stale read. If the directory does not exist yet, or the
kernel refuses another watch, start() returns False and the store carries on
without it.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger("magicstore.watcher")

_INOTIFY_TIMEOUT_MS = 200
_JOIN_TIMEOUT = 2.0

Stamp = tuple[int, int, int]


def file_stamp(path: Path) -> Stamp | None:
    """(mtime_ns, size, inode) of path, or None if it does not exist."""
    try:
        st = os.stat(path)
    except OSError:
        return None
    return (st.st_mtime_ns, st.st_size, st.st_ino)


class ChangeWatcher:
    """Calls on_change(key) on any create/modify/delete/rename of path."""

    def __init__(
        self,
        path: Path | str,
        key: str,
        on_change: Callable[[str], None],
        *,
        poll_interval: float = 1.0,
        use_inotify: bool = True,
    ) -> None:
        self.path = Path(path)
        self.key = key
        self.poll_interval = poll_interval
        self.mode: str | None = None
        self._on_change = on_change
        self._use_inotify = use_inotify
        self._inotify: Any = None
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._warned = False

    @property
    def active(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """Begin watching. Returns False (and logs once) if watching is unavailable."""
        if self.active:
            return True
        if not self.path.parent.is_dir():
            self._unavailable(f"directory {self.path.parent} does not exist", level=logging.INFO)
            return False

        self._stop.clear()
        if self._use_inotify:
            try:
                self._start_inotify()
            except ImportError:
                logger.debug("inotify_simple not available, falling back to polling")
                self._start_poll()
            except OSError as exc:
                self._unavailable(f"inotify: {exc}", level=logging.WARNING)
                return False
        else:
            self._start_poll()
        logger.info("watching %s for %s (%s)", self.path, self.key, self.mode)
        return True

    def dispose(self) -> None:
        """Stop the thread and release the OS watch handle. Safe to call twice."""
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=_JOIN_TIMEOUT)
            if thread.is_alive():
                logger.warning("watcher thread for %s did not stop in %.1fs", self.path, _JOIN_TIMEOUT)
        inotify, self._inotify = self._inotify, None
        if inotify is not None:
            try:
                inotify.close()
            except OSError as exc:
                logger.warning("failed to close inotify handle for %s: %s", self.path, exc)
        self.mode = None

    # ------------------------------------------------------------------
    # inotify
    # ------------------------------------------------------------------

    def _start_inotify(self) -> None:
        import inotify_simple  # type: ignore[import]

        flags = inotify_simple.flags  # type: ignore[attr-defined]
        inotify = inotify_simple.INotify()
        try:
            inotify.add_watch(
                str(self.path.parent),
                flags.CREATE | flags.MODIFY | flags.CLOSE_WRITE | flags.DELETE
                | flags.MOVED_FROM | flags.MOVED_TO,
            )
        except OSError:
            inotify.close()
            raise
        self._inotify = inotify
        self.mode = "inotify"
        self._spawn(self._run_inotify, inotify, flags)

    def _run_inotify(self, inotify: Any, flags: Any) -> None:
        name = self.path.name
        while not self._stop.is_set():
            try:
                events = inotify.read(timeout=_INOTIFY_TIMEOUT_MS)
            except (OSError, ValueError):
                # closed under us by dispose()
                return
            if self._stop.is_set():
                return
            if any(e.name == name for e in events):
                self._fire()
            if any(e.mask & flags.IGNORED for e in events):
                # directory itself went away; the kernel dropped the watch
                logger.info("watch on %s removed by the kernel", self.path.parent)
                self._fire()
                return

    # ------------------------------------------------------------------
    # Polling fallback
    # ------------------------------------------------------------------

    def _start_poll(self) -> None:
        self.mode = "poll"
        self._spawn(self._run_poll, file_stamp(self.path))

    def _run_poll(self, last: Stamp | None) -> None:
        while not self._stop.wait(self.poll_interval):
            current = file_stamp(self.path)
            if current != last:
                last = current
                self._fire()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _spawn(self, target: Callable[..., None], *args: Any) -> None:
        self._thread = threading.Thread(
            target=target,
            args=args,
            name=f"magicstore-watch-{self.key}",
            daemon=True,
        )
        self._thread.start()

    def _fire(self) -> None:
        logger.debug("%s changed, invalidating %s", self.path, self.key)
        try:
            self._on_change(self.key)
        except Exception:
            logger.exception("invalidation callback failed for %s", self.key)

    def _unavailable(self, reason: str, *, level: int) -> None:
        if not self._warned:
            self._warned = True
            logger.log(level, "not watching %s: %s", self.path, reason)
