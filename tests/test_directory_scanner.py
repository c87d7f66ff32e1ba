"""
Tests for call_bridge/directory_scanner.py
Uses real temporary directories for the local filesystem and the fake for error paths.
"""

import os
from datetime import datetime, timezone

import pytest

from call_bridge.directory_scanner import DirectoryScanner, LocalFileSystem, normalize_timestamp
from fakes import FakeFileSystem


class TestNormalizeTimestamp:

    def test_epoch_seconds_float(self):
        assert normalize_timestamp(1704067200.5) == 1704067200500

    def test_epoch_milliseconds_int(self):
        assert normalize_timestamp(1704067200000) == 1704067200000

    def test_datetime(self):
        dt = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert normalize_timestamp(dt) == 1704067200000

    def test_numeric_string(self):
        assert normalize_timestamp("1704067200") == 1704067200000

    def test_iso_string(self):
        assert normalize_timestamp("2024-01-01T00:00:00Z") == 1704067200000

    @pytest.mark.parametrize("value", [None, "", "yesterday", object(), -5, 0, float('nan'), True])
    def test_unparsable_becomes_zero(self, value):
        assert normalize_timestamp(value) == 0


class TestLocalFileSystem:

    def test_lists_files_and_dirs(self, tmp_path):
        (tmp_path / "a.m4a").write_bytes(b"x" * 10)
        (tmp_path / "sub").mkdir()
        os.utime(tmp_path / "a.m4a", (1704067200, 1704067200))

        entries = {e.name: e for e in LocalFileSystem().list_files(str(tmp_path))}

        assert entries["a.m4a"].is_file
        assert entries["a.m4a"].size_bytes == 10
        assert entries["a.m4a"].modified_at == pytest.approx(1704067200)
        assert not entries["sub"].is_file

    def test_exists_only_for_directories(self, tmp_path):
        (tmp_path / "file.txt").write_text("x")
        fs = LocalFileSystem()
        assert fs.exists(str(tmp_path))
        assert not fs.exists(str(tmp_path / "file.txt"))
        assert not fs.exists(str(tmp_path / "missing"))


class TestDirectoryScanner:

    def test_scan_returns_regular_files_with_ms_times(self, tmp_path):
        (tmp_path / "rec.mp3").write_bytes(b"abc")
        (tmp_path / "nested").mkdir()
        os.utime(tmp_path / "rec.mp3", (1704067200, 1704067200))

        files = DirectoryScanner().scan(str(tmp_path))

        assert len(files) == 1
        assert files[0].name == "rec.mp3"
        assert files[0].path == str(tmp_path / "rec.mp3")
        assert files[0].modified_at == 1704067200000
        assert files[0].size_bytes == 3

    def test_missing_directory_is_empty(self, tmp_path):
        scanner = DirectoryScanner()
        assert scanner.scan(str(tmp_path / "nope")) == []
        assert scanner.get_stats()['directories_missing'] == 1

    def test_permission_error_is_absorbed(self):
        fs = FakeFileSystem(errors={"/locked": PermissionError("denied")})
        scanner = DirectoryScanner(filesystem=fs)

        assert scanner.scan("/locked") == []
        assert scanner.get_stats()['directories_failed'] == 1

    def test_unparsable_mtime_normalized_to_zero(self):
        fs = FakeFileSystem()
        fs.add_file("/rec", "weird.m4a", modified_at="not-a-date")

        files = DirectoryScanner(filesystem=fs).scan("/rec")

        assert files[0].modified_at == 0

    def test_no_state_cached_between_scans(self):
        fs = FakeFileSystem(errors={"/flaky": PermissionError("denied")})
        scanner = DirectoryScanner(filesystem=fs)
        assert scanner.scan("/flaky") == []

        # Permission granted later: the next scan sees the files
        del fs.errors["/flaky"]
        fs.add_file("/flaky", "call.m4a", modified_at=1704067200000)
        assert [f.name for f in scanner.scan("/flaky")] == ["call.m4a"]
