"""All-or-nothing file replacement.

The new bytes go to a temp file in the target's own directory (rename is only
atomic within one filesystem), are fsynced, then renamed over the target.
Readers see either the old file or the new one, never a mix.
"""

from __future__ import annotations

import contextlib
import logging
import os
import tempfile
from pathlib import Path

from magicstore.errors import WriteFailureError

logger = logging.getLogger("magicstore.atomic")


def _read_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


# os.umask() can only be read by setting it, so do that once at import
_UMASK = _read_umask()


def _current_umask() -> int:
    """The live umask from /proc on Linux, else the one seen at import."""
    try:
        with open("/proc/self/status", encoding="ascii", errors="replace") as f:
            for line in f:
                if line.startswith("Umask:"):
                    return int(line.split()[1], 8)
    except (OSError, ValueError, IndexError):
        pass
    return _UMASK


def atomic_write(path: Path | str, data: bytes, *, operation: str = "write") -> None:
    """Replace *path* with *data*. On failure *path* is byte-identical to before.

    Raises WriteFailureError (chained to the OSError) if anything fails.
    """
    path = Path(path)
    try:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    except OSError as exc:
        raise WriteFailureError(path=path, operation=operation, reason=str(exc)) from exc

    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        _copy_mode(path, tmp)
        os.replace(tmp, path)
    except BaseException as exc:
        with contextlib.suppress(OSError):
            tmp.unlink()
        if isinstance(exc, OSError):
            raise WriteFailureError(path=path, operation=operation, reason=str(exc)) from exc
        raise

    _fsync_dir(path.parent)
    logger.debug("wrote %d bytes to %s", len(data), path)


def _copy_mode(src: Path, dst: Path) -> None:
    """Keep the permission bits of an existing target; new files get 0666 minus the umask.

    mkstemp always creates 0600.
    """
    try:
        mode = src.stat().st_mode & 0o777
    except FileNotFoundError:
        mode = 0o666 & ~_current_umask()
    os.chmod(dst, mode)


def _fsync_dir(directory: Path) -> None:
    """Persist the rename itself. Best effort: not every platform allows it."""
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)
