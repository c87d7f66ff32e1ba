#!/usr/bin/env python3
"""
Recording Locator
Finds the file a third-party call recorder wrote for a call that just ended.

There is no handle linking the call to the recorder's output, so matching is
a time-window heuristic: a file qualifies when its mtime lies in
[ended_at - skew_tolerance, ended_at + window]. The latest qualifying file wins,
ties go to the lexicographically greatest path. An unrelated older file must
never be picked, so the window only reaches a little into the past.
"""

import logging
import os
from typing import Iterable, Optional, Sequence

from call_bridge import config
from call_bridge.call_session import CandidateFile
from call_bridge.directory_scanner import DirectoryScanner


class RecordingLocator:

    def __init__(self, scanner: DirectoryScanner = None,
                 window_ms: int = config.CORRELATION_WINDOW_MS,
                 skew_tolerance_ms: int = config.SKEW_TOLERANCE_MS,
                 extensions: Sequence[str] = None,
                 min_size_bytes: int = config.MIN_RECORDING_BYTES,
                 logger=None):
        self.logger = logger or logging.getLogger(__name__)
        self.scanner = scanner or DirectoryScanner(logger=self.logger)
        self.window_ms = window_ms
        self.skew_tolerance_ms = skew_tolerance_ms
        if extensions is None:
            extensions = config.RECORDING_EXTENSIONS
        self.extensions = tuple(ext.lower() for ext in extensions)
        self.min_size_bytes = min_size_bytes

    def locate(self, ended_at: int, directories: Iterable[str],
               window: Optional[int] = None,
               skew_tolerance: Optional[int] = None) -> Optional[CandidateFile]:
        """
        Scan every directory and return the best match for a call that ended at ended_at.

        Args:
            ended_at: Call end time, epoch ms
            directories: Ordered candidate directories (order only affects logging)
            window: How long after ended_at a file may still be written (ms)
            skew_tolerance: How far before ended_at a file may be stamped (ms)

        Returns:
            The matching CandidateFile, or None
        """
        window = self.window_ms if window is None else window
        skew_tolerance = self.skew_tolerance_ms if skew_tolerance is None else skew_tolerance
        earliest = ended_at - skew_tolerance
        latest = ended_at + window

        best = None
        scanned = 0
        for directory in directories:
            scanned += 1
            for candidate in self.scanner.scan(directory):
                if not self._accepts(candidate):
                    continue
                if not earliest <= candidate.modified_at <= latest:
                    continue
                self.logger.debug(
                    f"[Locator] Candidate {candidate.path} "
                    f"(mtime offset {candidate.modified_at - ended_at:+d}ms)"
                )
                if best is None or (candidate.modified_at, candidate.path) > (best.modified_at, best.path):
                    best = candidate

        if best:
            self.logger.info(
                f"[Locator] ✅ Matched {best.name} in {os.path.dirname(best.path)} "
                f"({best.size_bytes} bytes, {best.modified_at - ended_at:+d}ms from call end)"
            )
        else:
            self.logger.info(
                f"[Locator] No recording within [{-skew_tolerance:+d}ms, {window:+d}ms] "
                f"of call end across {scanned} directories"
            )
        return best

    def _accepts(self, candidate: CandidateFile) -> bool:
        if candidate.size_bytes < self.min_size_bytes:
            return False
        if self.extensions and os.path.splitext(candidate.name)[1].lower() not in self.extensions:
            return False
        return True
