#!/usr/bin/env python3
"""
Directory Scanner
- Lists regular files in recorder directories with mtime (epoch ms) and size
- Missing or unreadable directories are logged and skipped, never raised
- Timestamps are normalized here so the locator only sees integers
"""

import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Sequence

from call_bridge.call_session import CandidateFile


@dataclass(frozen=True)
class FileEntry:
    """Raw directory entry as returned by a filesystem collaborator."""
    name: str
    path: str
    modified_at: Any
    size_bytes: int
    is_file: bool


class LocalFileSystem:
    """Filesystem collaborator backed by os.scandir."""

    def exists(self, path: str) -> bool:
        return os.path.isdir(path)

    def list_files(self, path: str) -> Sequence[FileEntry]:
        entries = []
        with os.scandir(path) as it:
            for entry in it:
                try:
                    is_file = entry.is_file(follow_symlinks=True)
                    stat = entry.stat(follow_symlinks=True)
                except OSError:
                    # Vanished or unreadable between listing and stat
                    continue
                entries.append(FileEntry(
                    name=entry.name,
                    path=entry.path,
                    modified_at=stat.st_mtime,
                    size_bytes=stat.st_size,
                    is_file=is_file,
                ))
        return entries


def normalize_timestamp(value: Any) -> int:
    """
    Normalize a modification time to epoch milliseconds.

    Accepts epoch seconds (int/float), epoch milliseconds, datetimes,
    numeric strings and ISO-8601 strings. Anything unparsable becomes 0,
    which every correlation window excludes.
    """
    if value is None or isinstance(value, bool):
        return 0

    if isinstance(value, datetime):
        try:
            return int(value.timestamp() * 1000)
        except (OverflowError, OSError, ValueError):
            return 0

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            value = float(text)
        except ValueError:
            try:
                return int(datetime.fromisoformat(text.replace('Z', '+00:00')).timestamp() * 1000)
            except (ValueError, OverflowError, OSError):
                return 0

    if isinstance(value, (int, float)):
        if value != value or value <= 0:  # NaN or non-positive
            return 0
        # Anything past 1e11 cannot be seconds (year 5138), treat as ms
        if value >= 1e11:
            return int(value)
        return int(value * 1000)

    return 0


class DirectoryScanner:
    """Scans one directory at a time. Holds no directory state between scans."""

    def __init__(self, filesystem=None, logger=None):
        self.filesystem = filesystem or LocalFileSystem()
        self.logger = logger or logging.getLogger(__name__)

        self.stats = {
            'directories_scanned': 0,
            'directories_missing': 0,
            'directories_failed': 0,
            'files_seen': 0
        }
        self.stats_lock = threading.Lock()

    def scan(self, path: str) -> List[CandidateFile]:
        """Return the regular files in path. Errors yield an empty list."""
        try:
            if not self.filesystem.exists(path):
                self.logger.debug(f"[Scanner] Skipping missing directory: {path}")
                with self.stats_lock:
                    self.stats['directories_missing'] += 1
                return []

            entries = self.filesystem.list_files(path)
        except Exception as e:
            self.logger.warning(f"[Scanner] ⚠️ Cannot read {path}: {e}")
            with self.stats_lock:
                self.stats['directories_failed'] += 1
            return []

        files = []
        for entry in entries:
            if not entry.is_file:
                continue
            files.append(CandidateFile(
                path=entry.path,
                name=entry.name,
                modified_at=normalize_timestamp(entry.modified_at),
                size_bytes=int(entry.size_bytes or 0),
            ))

        with self.stats_lock:
            self.stats['directories_scanned'] += 1
            self.stats['files_seen'] += len(files)

        self.logger.debug(f"[Scanner] {path}: {len(files)} files")
        return files

    def get_stats(self):
        with self.stats_lock:
            return self.stats.copy()
