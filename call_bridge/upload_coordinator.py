#!/usr/bin/env python3
"""
Upload Coordinator
Delivers a matched call recording to the CRM without blocking call handling.

- One attempt sequence per call: duplicate submits are ignored under the session lock
- Up to max_attempts tries with exponential backoff; each try runs on a worker
  thread, backoff waits run on timers so they never hold a worker
- Backoff waits are cancellable; late completions for torn-down sessions are discarded
- Terminal outcome reported through a callback, never raised to the caller
"""

import logging
import mimetypes
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import quote

import requests

from call_bridge import config
from call_bridge.call_session import (
    CallSession, CandidateFile, UploadAttempt, UploadOutcome, UploadStatus
)
from call_bridge.errors import UploadError


class _UploadJob:
    """Bookkeeping for one call's attempt sequence."""

    def __init__(self, session: CallSession, call_id: str, file: CandidateFile):
        self.session = session
        self.call_id = call_id
        self.file = file
        self.tracker = UploadAttempt()
        self.cancel_event = threading.Event()
        self.timer: Optional[threading.Timer] = None


class UploadCoordinator:

    def __init__(self, server_url: str = config.SERVER_URL, token: Optional[str] = None,
                 http_session: requests.Session = None,
                 max_attempts: int = config.UPLOAD_MAX_ATTEMPTS,
                 backoff_base: float = config.UPLOAD_BACKOFF_BASE,
                 backoff_max: float = config.UPLOAD_BACKOFF_MAX,
                 timeout: float = config.UPLOAD_TIMEOUT,
                 max_workers: int = config.UPLOAD_WORKERS,
                 on_complete: Callable[[UploadOutcome], None] = None,
                 logger=None):
        self.server_url = server_url.rstrip('/')
        self.token = token
        self.http = http_session or requests.Session()
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.timeout = timeout
        self.on_complete = on_complete
        self.logger = logger or logging.getLogger(__name__)

        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="UploadWorker")

        # Active sequences, keyed by the call id captured at submit time
        self._jobs: Dict[str, _UploadJob] = {}
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._closed = False

        self.stats = {
            'submitted': 0,
            'duplicates_ignored': 0,
            'uploaded': 0,
            'failed': 0,
            'cancelled': 0,
            'tries': 0
        }
        self.stats_lock = threading.Lock()

    def set_token(self, token: Optional[str]):
        self.token = token

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)

    def submit(self, session: CallSession, file: CandidateFile) -> None:
        """
        Start the upload sequence for a session. Returns immediately.

        No-op when the session is already uploading or uploaded.
        """
        with session.lock:
            if session.torn_down:
                self.logger.info(f"[Upload] Session {session.call_id} already torn down - not uploading")
                return
            if session.upload_status in (UploadStatus.UPLOADING, UploadStatus.UPLOADED):
                with self.stats_lock:
                    self.stats['duplicates_ignored'] += 1
                self.logger.info(
                    f"[Upload] Duplicate submit for {session.call_id} ignored "
                    f"(status={session.upload_status.value})"
                )
                return
            session.upload_status = UploadStatus.UPLOADING
            session.matched_file = file
            call_id = session.call_id

        job = _UploadJob(session, call_id, file)

        with self._lock:
            closed = self._closed
            if not closed:
                self._jobs[call_id] = job
                self.executor.submit(self._run_try, job)

        if closed:
            self.logger.error(f"[Upload] ❌ Coordinator shut down - cannot upload {call_id}")
            job.tracker.last_error = "Upload coordinator is shut down"
            self._finish(job, UploadStatus.FAILED)
            return

        with self.stats_lock:
            self.stats['submitted'] += 1
        self.logger.info(f"[Upload] Queued {file.name} for call {call_id}")

    def cancel(self, call_id: str) -> bool:
        """Cancel a pending backoff for call_id. An in-flight request finishes but is discarded."""
        with self._lock:
            job = self._jobs.get(call_id)
            if job is None:
                return False
            job.cancel_event.set()
            timer, job.timer = job.timer, None
        self.logger.info(f"[Upload] Cancelled upload for {call_id}")
        if timer is not None:
            timer.cancel()
            self._discard(job, "cancelled during backoff")
        return True

    def is_active(self, call_id: str) -> bool:
        with self._lock:
            return call_id in self._jobs

    def get_tracker(self, call_id: str) -> Optional[UploadAttempt]:
        with self._lock:
            job = self._jobs.get(call_id)
            return job.tracker if job else None

    def wait_idle(self, timeout: float = None) -> bool:
        """Block until every attempt sequence concluded. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._jobs, timeout=timeout)

    def shutdown(self, wait_for_uploads: bool = False):
        """Cancel every backoff timer and stop the worker pool."""
        with self._lock:
            self._closed = True
            jobs = list(self._jobs.values())
            for job in jobs:
                job.cancel_event.set()
                if job.timer is not None:
                    job.timer.cancel()
                    job.timer = None
        self.executor.shutdown(wait=wait_for_uploads, cancel_futures=True)
        # Queued tries that never started, and backoffs that were cut short
        for job in jobs:
            self._discard(job, "coordinator shut down")
        self.logger.info(f"[Upload] Coordinator shut down. Final stats: {self.get_stats()}")

    def get_stats(self):
        with self.stats_lock:
            return self.stats.copy()

    def _run_try(self, job: _UploadJob):
        tracker = job.tracker
        try:
            if job.cancel_event.is_set():
                self._discard(job, "cancelled before try")
                return

            attempt = tracker.attempt_count + 1
            tracker.attempt_count = attempt
            tracker.next_retry_at = None
            with self.stats_lock:
                self.stats['tries'] += 1

            try:
                self._send(job.session, job.call_id, job.file)
                self.logger.info(f"[Upload] ✅ {job.file.name} uploaded for {job.call_id} (try {attempt}/{self.max_attempts})")
                self._finish(job, UploadStatus.UPLOADED)
                return
            except UploadError as e:
                tracker.last_error = str(e)
                self.logger.warning(f"[Upload] ⚠️ Try {attempt}/{self.max_attempts} failed for {job.call_id}: {e}")

            if attempt < self.max_attempts:
                self._schedule_retry(job, self.backoff_delay(attempt))
                return

            self.logger.error(f"[Upload] ❌ Giving up on {job.call_id} after {self.max_attempts} tries: {tracker.last_error}")
            self._finish(job, UploadStatus.FAILED)
        except Exception as e:
            tracker.last_error = str(e)
            self.logger.error(f"[Upload] Unexpected error uploading {job.call_id}: {e}", exc_info=True)
            self._finish(job, UploadStatus.FAILED)

    def _schedule_retry(self, job: _UploadJob, delay: float):
        timer = threading.Timer(delay, self._retry, args=(job,))
        timer.daemon = True
        with self._lock:
            if job.cancel_event.is_set():
                cancelled = True
            else:
                cancelled = False
                job.tracker.next_retry_at = time.time() + delay
                job.timer = timer
                timer.start()
        if cancelled:
            self._discard(job, "cancelled before backoff")
            return
        self.logger.info(f"[Upload] Retrying {job.call_id} in {delay:.1f}s")

    def _retry(self, job: _UploadJob):
        with self._lock:
            job.timer = None
            runnable = not job.cancel_event.is_set() and not self._closed
            if runnable:
                try:
                    self.executor.submit(self._run_try, job)
                except RuntimeError:
                    runnable = False
        if not runnable:
            self._discard(job, "cancelled during backoff")

    def _send(self, session: CallSession, call_id: str, file: CandidateFile):
        """One transfer try. Raises UploadError on transport failure or non-2xx."""
        url, field = self._endpoint_for(session, call_id)
        data = {
            'callId': call_id,
            'phoneNumber': session.phone_number or 'Unknown',
            'timestamp': str(session.ended_at if session.ended_at is not None else file.modified_at),
            'duration': str(session.duration_seconds),
            'status': 'completed',
        }
        headers = {}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        mime_type = mimetypes.guess_type(file.name)[0] or config.DEFAULT_RECORDING_MIME

        self.logger.debug(f"[Upload] POST {url} ({file.size_bytes} bytes, {mime_type}, field={field})")
        try:
            with open(file.path, 'rb') as fh:
                response = self.http.post(
                    url,
                    data=data,
                    files={field: (file.name, fh, mime_type)},
                    headers=headers,
                    timeout=self.timeout,
                )
        except requests.exceptions.RequestException as e:
            raise UploadError(f"Network error: {e}")
        except OSError as e:
            raise UploadError(f"Cannot read {file.path}: {e}")

        if not 200 <= response.status_code < 300:
            raise UploadError(
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

    def _endpoint_for(self, session: CallSession, call_id: str) -> Tuple[str, str]:
        """URL and multipart file field for the session's endpoint."""
        if session.remote_initiated:
            path = config.CALL_COMPLETE_PATH.format(call_id=quote(call_id, safe=''))
            return f"{self.server_url}{path}", config.CALL_COMPLETE_FILE_FIELD
        return f"{self.server_url}{config.RECORDING_UPLOAD_PATH}", config.RECORDING_UPLOAD_FILE_FIELD

    def _finish(self, job: _UploadJob, status: UploadStatus):
        session = job.session
        with session.lock:
            if session.torn_down or job.cancel_event.is_set():
                discarded = True
            else:
                discarded = False
                session.upload_status = status
        if discarded:
            self._discard(job, f"late {status.value} result")
            return

        with self.stats_lock:
            self.stats['uploaded' if status is UploadStatus.UPLOADED else 'failed'] += 1

        outcome = UploadOutcome(
            call_id=job.call_id,
            phone_number=session.phone_number,
            status=status.value,
            attempt_count=job.tracker.attempt_count,
            last_error=job.tracker.last_error if status is UploadStatus.FAILED else None,
            file_path=job.file.path,
        )
        if self.on_complete:
            try:
                self.on_complete(outcome)
            except Exception as e:
                self.logger.error(f"[Upload] Completion callback failed for {job.call_id}: {e}", exc_info=True)
        self._release(job)

    def _discard(self, job: _UploadJob, reason: str):
        if not self._release(job):
            return
        with self.stats_lock:
            self.stats['cancelled'] += 1
        self.logger.info(f"[Upload] Discarding upload for {job.call_id}: {reason}")

    def _release(self, job: _UploadJob) -> bool:
        """Forget job once its sequence concluded. False if already released."""
        with self._idle:
            if self._jobs.get(job.call_id) is not job:
                return False
            del self._jobs[job.call_id]
            self._idle.notify_all()
            return True
