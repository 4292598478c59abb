"""Shared pytest fixtures for magicstore tests."""

from __future__ import annotations

import subprocess
import sys
import time
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from magicstore.config import StoreSettings
from magicstore.store import reset_stores

if TYPE_CHECKING:
    from collections.abc import Callable


@pytest.fixture(autouse=True)
def _reset_registry():
    reset_stores()
    yield
    reset_stores()


@pytest.fixture()
def lock_dir(tmp_path: Path) -> Path:
    return tmp_path / "locks"


@pytest.fixture()
def settings(tmp_path: Path, lock_dir: Path) -> StoreSettings:
    return StoreSettings(
        data_dir=tmp_path / "data",
        lock_dir=lock_dir,
        lock_timeout=5.0,
        lock_poll_interval=0.01,
        watch_poll_interval=0.05,
    )


def run_child(script: str, *args: object, timeout: float = 30.0) -> subprocess.CompletedProcess[str]:
    """Run script in a fresh interpreter and wait for it."""
    return subprocess.run(
        [sys.executable, "-c", script, *map(str, args)],
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )


def spawn_child(script: str, *args: object) -> subprocess.Popen[str]:
    return subprocess.Popen(
        [sys.executable, "-c", script, *map(str, args)],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


# Child scripts. argv: see each script.

HOLD_LOCK = """\
import sys, time
from magicstore.lock import ProcessLock
path, lock_dir, seconds = sys.argv[1], sys.argv[2], float(sys.argv[3])
with ProcessLock(lock_dir).hold(path):
    print("locked", flush=True)
    time.sleep(seconds)
"""

ABANDON_LOCK = """\
import os, sys
from magicstore.lock import ProcessLock
with ProcessLock(sys.argv[2]).hold(sys.argv[1]):
    os._exit(3)
"""

APPEND_RECORD = """\
import sys
from magicstore.config import StoreSettings
from magicstore.store import Store
path, lock_dir, record = sys.argv[1:4]
store = Store(
    "records", path,
    default=lambda: {"records": []},
    settings=StoreSettings(lock_dir=lock_dir, watch=False, lock_timeout=30.0, lock_poll_interval=0.005),
)
store.update(lambda doc: doc["records"].append(record))
"""

SAVE_DOC = """\
import json, sys
from magicstore.config import StoreSettings
from magicstore.store import Store
path, lock_dir, doc = sys.argv[1:4]
store = Store("records", path, settings=StoreSettings(lock_dir=lock_dir, watch=False))
store.save(json.loads(doc))
"""

CRASH_BEFORE_RENAME = """\
import os, sys
from magicstore import atomic
os.replace = lambda *a, **k: os._exit(9)
atomic.atomic_write(sys.argv[1], sys.argv[2].encode())
"""

CRASH_HOLDING_LOCK_BEFORE_RENAME = """\
import os, sys
from magicstore import atomic
from magicstore.lock import ProcessLock
path, lock_dir, data = sys.argv[1:4]
os.replace = lambda *a, **k: os._exit(9)
with ProcessLock(lock_dir).hold(path):
    atomic.atomic_write(path, data.encode())
"""
