"""Tests for ChangeWatcher (polling fallback and inotify)."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest
from conftest import wait_for

from magicstore.atomic import atomic_write
from magicstore.watcher import ChangeWatcher, file_stamp


class _Recorder:
    def __init__(self) -> None:
        self.keys: list[str] = []

    def __call__(self, key: str) -> None:
        self.keys.append(key)


class TestFileStamp:
    def test_missing_is_none(self, tmp_path: Path) -> None:
        assert file_stamp(tmp_path / "nope.json") is None

    def test_changes_on_replace(self, tmp_path: Path) -> None:
        target = tmp_path / "s.json"
        atomic_write(target, b"1")
        before = file_stamp(target)
        atomic_write(target, b"22")
        assert file_stamp(target) != before


class TestPollingWatcher:
    def _watcher(self, path: Path, recorder: _Recorder) -> ChangeWatcher:
        return ChangeWatcher(path, "demo", recorder, poll_interval=0.02, use_inotify=False)

    def test_fires_on_create_modify_delete(self, tmp_path: Path) -> None:
        target = tmp_path / "s.json"
        rec = _Recorder()
        watcher = self._watcher(target, rec)
        assert watcher.start()
        try:
            assert watcher.mode == "poll"
            target.write_text("{}")
            assert wait_for(lambda: len(rec.keys) >= 1)
            atomic_write(target, b'{"a": 1}')
            assert wait_for(lambda: len(rec.keys) >= 2)
            target.unlink()
            assert wait_for(lambda: len(rec.keys) >= 3)
        finally:
            watcher.dispose()
        assert set(rec.keys) == {"demo"}

    def test_ignores_other_files(self, tmp_path: Path) -> None:
        target = tmp_path / "s.json"
        rec = _Recorder()
        watcher = self._watcher(target, rec)
        watcher.start()
        try:
            (tmp_path / "other.json").write_text("{}")
            assert not wait_for(lambda: bool(rec.keys), timeout=0.3)
        finally:
            watcher.dispose()

    def test_dispose_stops_and_is_idempotent(self, tmp_path: Path) -> None:
        target = tmp_path / "s.json"
        rec = _Recorder()
        watcher = self._watcher(target, rec)
        watcher.start()
        assert watcher.active
        watcher.dispose()
        watcher.dispose()
        assert not watcher.active
        assert watcher.mode is None
        target.write_text("{}")
        assert not wait_for(lambda: bool(rec.keys), timeout=0.2)

    def test_callback_errors_do_not_kill_the_thread(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture,
    ) -> None:
        target = tmp_path / "s.json"
        calls: list[str] = []

        def _explode(key: str) -> None:
            calls.append(key)
            raise RuntimeError("callback broke")

        watcher = ChangeWatcher(target, "demo", _explode, poll_interval=0.02, use_inotify=False)
        watcher.start()
        try:
            with caplog.at_level(logging.ERROR, logger="magicstore.watcher"):
                target.write_text("1")
                assert wait_for(lambda: len(calls) >= 1)
                target.write_text("22")
                assert wait_for(lambda: len(calls) >= 2)
            assert watcher.active
            assert "invalidation callback failed" in caplog.text
        finally:
            watcher.dispose()


class TestUnavailable:
    def test_missing_directory_does_not_start(self, tmp_path: Path) -> None:
        watcher = ChangeWatcher(tmp_path / "later" / "s.json", "demo", _Recorder())
        assert watcher.start() is False
        assert not watcher.active
        watcher.dispose()

    def test_logged_once(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        watcher = ChangeWatcher(tmp_path / "later" / "s.json", "demo", _Recorder())
        with caplog.at_level(logging.INFO, logger="magicstore.watcher"):
            watcher.start()
            watcher.start()
        assert caplog.text.count("not watching") == 1

    def test_starts_once_directory_exists(self, tmp_path: Path) -> None:
        target = tmp_path / "later" / "s.json"
        watcher = ChangeWatcher(target, "demo", _Recorder(), use_inotify=False, poll_interval=0.02)
        assert watcher.start() is False
        target.parent.mkdir()
        try:
            assert watcher.start() is True
        finally:
            watcher.dispose()

    def test_inotify_os_error_degrades(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture,
    ) -> None:
        def _limit(self: ChangeWatcher) -> None:
            raise OSError(28, "inotify watch limit reached")

        monkeypatch.setattr(ChangeWatcher, "_start_inotify", _limit)
        watcher = ChangeWatcher(tmp_path / "s.json", "demo", _Recorder())
        with caplog.at_level(logging.WARNING, logger="magicstore.watcher"):
            assert watcher.start() is False
        assert "watch limit" in caplog.text

    def test_missing_inotify_falls_back_to_polling(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        def _no_module(self: ChangeWatcher) -> None:
            raise ImportError("inotify_simple")

        monkeypatch.setattr(ChangeWatcher, "_start_inotify", _no_module)
        watcher = ChangeWatcher(tmp_path / "s.json", "demo", _Recorder(), poll_interval=0.02)
        try:
            assert watcher.start()
            assert watcher.mode == "poll"
        finally:
            watcher.dispose()


class TestInotifyWatcher:
    @pytest.fixture(autouse=True)
    def _need_inotify(self) -> None:
        pytest.importorskip("inotify_simple")

    def test_fires_on_atomic_replace(self, tmp_path: Path) -> None:
        target = tmp_path / "s.json"
        rec = _Recorder()
        watcher = ChangeWatcher(target, "demo", rec)
        if not watcher.start():
            pytest.skip("inotify unavailable in this environment")
        try:
            assert watcher.mode == "inotify"
            atomic_write(target, b"{}")
            assert wait_for(lambda: "demo" in rec.keys)
        finally:
            watcher.dispose()

    def test_ignores_sibling_files(self, tmp_path: Path) -> None:
        target = tmp_path / "s.json"
        rec = _Recorder()
        watcher = ChangeWatcher(target, "demo", rec)
        if not watcher.start():
            pytest.skip("inotify unavailable in this environment")
        try:
            (tmp_path / "other.json").write_text("{}")
            assert not wait_for(lambda: bool(rec.keys), timeout=0.4)
        finally:
            watcher.dispose()

    def test_dispose_releases_handle(self, tmp_path: Path) -> None:
        watcher = ChangeWatcher(tmp_path / "s.json", "demo", _Recorder())
        if not watcher.start():
            pytest.skip("inotify unavailable in this environment")
        watcher.dispose()
        assert not watcher.active
        assert watcher._inotify is None
