"""Typed errors surfaced by stores.

Only two conditions ever reach a caller: a lock that could not be acquired in
time and a write the filesystem refused. Corruption and a missing watcher are
handled inside the engine and only show up in the log.
"""

from __future__ import annotations

from pathlib import Path


class StoreError(Exception):
    """Base class. Always names the backing file and the operation."""

    def __init__(self, message: str, *, path: Path | str, operation: str) -> None:
        super().__init__(message)
        self.path = Path(path)
        self.operation = operation


class LockTimeoutError(StoreError, TimeoutError):
    """Another process held the store lock past the timeout. Retryable."""

    def __init__(self, *, path: Path | str, operation: str, timeout: float) -> None:
        msg = (
            f"{operation}: timed out after {timeout:g}s waiting for the lock on {path} "
            "(another process is using it; try again)"
        )
        super().__init__(msg, path=path, operation=operation)
        self.timeout = timeout


class WriteFailureError(StoreError, OSError):
    """The atomic replace failed. The backing file is unchanged."""

    def __init__(self, *, path: Path | str, operation: str, reason: str) -> None:
        msg = f"{operation}: could not write {path}: {reason}"
        super().__init__(msg, path=path, operation=operation)
        self.reason = reason
