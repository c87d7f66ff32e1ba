#!/usr/bin/env python3
"""
Call session data model
Sessions, candidate recording files, upload trackers and the events
passed between the monitor, the locator and the upload coordinator.
"""

import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from call_bridge import config


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class CallState(Enum):
    """Logical call phase of a tracked session."""
    DIALING = "dialing"
    RINGING = "ringing"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


class UploadStatus(Enum):
    NOT_ATTEMPTED = "not_attempted"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    FAILED = "failed"


@dataclass(frozen=True)
class CandidateFile:
    """A regular file seen during one scan. Times are epoch ms."""
    path: str
    name: str
    modified_at: int
    size_bytes: int


@dataclass(frozen=True)
class DirectoryConfig:
    """Ordered, de-duplicated absolute directories to scan for recordings."""
    directories: Tuple[str, ...]

    @classmethod
    def build(cls, watch_dirs: Iterable[str] = (), storage_root: str = config.STORAGE_ROOT,
              defaults: Optional[Iterable[str]] = None) -> "DirectoryConfig":
        """
        User watch directories first, then the built-in recorder locations.

        Relative watch directories are resolved against the storage root.
        """
        if defaults is None:
            defaults = config.DEFAULT_RECORDING_DIRS

        ordered: List[str] = []
        seen = set()
        candidates = list(watch_dirs or []) + [os.path.join(storage_root, d) for d in defaults]
        for path in candidates:
            if not path:
                continue
            if not os.path.isabs(path):
                path = os.path.join(storage_root, path)
            path = os.path.normpath(path)
            if path not in seen:
                seen.add(path)
                ordered.append(path)
        return cls(tuple(ordered))

    def __iter__(self):
        return iter(self.directories)

    def __len__(self):
        return len(self.directories)


@dataclass
class UploadAttempt:
    """Retry bookkeeping for one session's upload. Owned by the upload coordinator."""
    attempt_count: int = 0
    last_error: Optional[str] = None
    next_retry_at: Optional[float] = None


@dataclass
class CallSession:
    """One tracked call from first native event to terminal outcome."""
    call_id: str
    phone_number: str = ""
    state: CallState = CallState.DIALING
    started_at: int = 0
    ended_at: Optional[int] = None
    matched_file: Optional[CandidateFile] = None
    upload_status: UploadStatus = UploadStatus.NOT_ATTEMPTED
    remote_initiated: bool = False
    correlation_started: bool = False
    torn_down: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def duration_seconds(self) -> int:
        """Best-effort duration from native timestamps; 0 when unknown."""
        if self.ended_at is None or not self.started_at:
            return 0
        return max(0, int((self.ended_at - self.started_at) / 1000))

    def to_dict(self) -> dict:
        return {
            'call_id': self.call_id,
            'phone_number': self.phone_number,
            'state': self.state.value,
            'started_at': self.started_at,
            'ended_at': self.ended_at,
            'matched_file': self.matched_file.path if self.matched_file else None,
            'upload_status': self.upload_status.value,
            'remote_initiated': self.remote_initiated,
        }


@dataclass(frozen=True)
class SessionStarted:
    call_id: str
    phone_number: str
    started_at: int
    session: Optional[CallSession] = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class SessionEnded:
    call_id: str
    phone_number: str
    ended_at: int
    session: Optional[CallSession] = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class DialRequest:
    """Inbound "dial this number" command from the CRM."""
    phone_number: str
    call_id: str
    received_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class UploadOutcome:
    """Terminal result of a session's correlation/upload, reported to the host."""
    call_id: str
    phone_number: str
    status: str  # UploadStatus value, or "no_recording"
    attempt_count: int = 0
    last_error: Optional[str] = None
    file_path: Optional[str] = None

    NO_RECORDING = "no_recording"

    def to_payload(self) -> dict:
        """Wire shape for the remote status push."""
        return {
            'callId': self.call_id,
            'phoneNumber': self.phone_number,
            'status': self.status,
            'attempts': self.attempt_count,
            'error': self.last_error,
        }
