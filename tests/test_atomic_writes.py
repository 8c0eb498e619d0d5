"""
Tests for atomic file writing and multi-file replacement.
"""
from __future__ import annotations

import os
import stat
from pathlib import Path
from unittest.mock import patch

import pytest

from frontdoor.storage.atomic import atomic_write_bytes, atomic_write_text, discard_staged, stage_bytes
from frontdoor.storage.filesystem import CERT_MODE, KEY_MODE, remove_tree, write_file_set


def _mode(path: Path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


class TestAtomicWriteText:
    def test_creates_file(self, tmp_path):
        path = tmp_path / "test.txt"
        atomic_write_text(path, "hello world")
        assert path.read_text() == "hello world"

    def test_overwrites_existing(self, tmp_path):
        path = tmp_path / "test.txt"
        path.write_text("old content")
        atomic_write_text(path, "new content")
        assert path.read_text() == "new content"

    def test_no_temp_file_left(self, tmp_path):
        path = tmp_path / "test.txt"
        atomic_write_text(path, "content")
        assert [p.name for p in tmp_path.iterdir()] == ["test.txt"]

    def test_creates_parent_dirs(self, tmp_path):
        path = tmp_path / "subdir" / "nested" / "test.txt"
        atomic_write_text(path, "content")
        assert path.read_text() == "content"

    def test_default_mode_is_owner_only(self, tmp_path):
        path = tmp_path / "secret.key"
        atomic_write_text(path, "key material")
        assert _mode(path) == 0o600

    def test_explicit_mode_applied(self, tmp_path):
        path = tmp_path / "cert.pem"
        atomic_write_text(path, "cert", mode=0o644)
        assert _mode(path) == 0o644

    def test_temp_file_removed_when_rename_fails(self, tmp_path):
        path = tmp_path / "test.txt"
        path.write_text("original")
        with patch("frontdoor.storage.atomic.os.replace", side_effect=OSError("disk gone")):
            with pytest.raises(OSError):
                atomic_write_text(path, "replacement")
        assert path.read_text() == "original"
        assert [p.name for p in tmp_path.iterdir()] == ["test.txt"]


class TestAtomicWriteBytes:
    def test_creates_file(self, tmp_path):
        path = tmp_path / "test.bin"
        atomic_write_bytes(path, b"hello world")
        assert path.read_bytes() == b"hello world"

    def test_large_file(self, tmp_path):
        path = tmp_path / "large.bin"
        content = b"x" * (10 * 1024 * 1024)
        atomic_write_bytes(path, content)
        assert path.stat().st_size == len(content)

    def test_concurrent_writes_to_different_files(self, tmp_path):
        import concurrent.futures

        def write_file(i):
            path = tmp_path / f"concurrent{i}.txt"
            atomic_write_text(path, f"content {i}")
            return path

        with concurrent.futures.ThreadPoolExecutor(max_workers=4) as executor:
            paths = [f.result() for f in [executor.submit(write_file, i) for i in range(10)]]

        for i, path in enumerate(paths):
            assert path.read_text() == f"content {i}"
        assert list(tmp_path.glob(".*.tmp")) == []


class TestStaging:
    def test_staged_file_invisible_until_replaced(self, tmp_path):
        path = tmp_path / "bundle.pem"
        path.write_text("old")
        temp = stage_bytes(path, b"new", mode=0o600)
        assert path.read_text() == "old"
        assert temp.parent == tmp_path
        assert _mode(temp) == 0o600
        os.replace(temp, path)
        assert path.read_text() == "new"

    def test_discard_removes_temp_files(self, tmp_path):
        temps = [stage_bytes(tmp_path / name, b"x") for name in ("a.pem", "b.pem")]
        discard_staged(temps)
        discard_staged(temps)
        assert list(tmp_path.iterdir()) == []


# ─── File sets ────────────────────────────────────────────────────────────────

class TestWriteFileSet:
    def test_writes_all_files_with_modes(self, tmp_path):
        directory = tmp_path / "agents" / "a1"
        write_file_set(directory, {
            "server.key": ("KEY", KEY_MODE),
            "server.crt": ("CERT", CERT_MODE),
        })
        assert (directory / "server.key").read_text() == "KEY"
        assert _mode(directory / "server.key") == 0o600
        assert _mode(directory / "server.crt") == 0o644

    def test_replaces_whole_directory(self, tmp_path):
        directory = tmp_path / "a1"
        write_file_set(directory, {"old.pem": ("OLD", CERT_MODE), "server.crt": ("C1", CERT_MODE)})
        write_file_set(directory, {"server.crt": ("C2", CERT_MODE)})

        assert sorted(p.name for p in directory.iterdir()) == ["server.crt"]
        assert (directory / "server.crt").read_text() == "C2"
        # Only the final directory remains next to it
        assert sorted(p.name for p in tmp_path.iterdir()) == ["a1"]

    def test_failed_write_leaves_previous_set(self, tmp_path):
        directory = tmp_path / "a1"
        write_file_set(directory, {"server.crt": ("C1", CERT_MODE)})

        real_fsync = os.fsync
        calls = []

        def flaky_fsync(fd):
            calls.append(fd)
            if len(calls) == 2:
                raise OSError("I/O error")
            return real_fsync(fd)

        with patch("frontdoor.storage.filesystem.os.fsync", side_effect=flaky_fsync):
            with pytest.raises(OSError):
                write_file_set(directory, {
                    "server.key": ("K2", KEY_MODE),
                    "server.crt": ("C2", CERT_MODE),
                })

        assert (directory / "server.crt").read_text() == "C1"
        assert not (directory / "server.key").exists()
        assert sorted(p.name for p in tmp_path.iterdir()) == ["a1"]


class TestRemoveTree:
    def test_removes_existing(self, tmp_path):
        directory = tmp_path / "a1"
        directory.mkdir()
        (directory / "f").write_text("x")
        assert remove_tree(directory) is True
        assert not directory.exists()

    def test_missing_is_false(self, tmp_path):
        assert remove_tree(tmp_path / "nope") is False
