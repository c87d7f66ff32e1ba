#!/usr/bin/env python3
"""
Device Bridge
Wires native call events, recording discovery, uploads and the CRM command
channel together for one signed-in user.

- Every input (native events, dial requests, timers, background results) is
  posted onto one queue and handled by a single dispatcher thread, which is
  the only writer of the session table
- Call end -> settle delay -> locate recording -> upload
- Remote dial requests are forwarded to call control and tag the next call
  with the server's call id
- A reaper tears down ended sessions that outlive MAX_SESSION_LIFETIME and
  forgets live calls whose end event never arrived
"""

import logging
import queue
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, Optional

from call_bridge import config
from call_bridge.call_lifecycle_monitor import CallLifecycleMonitor
from call_bridge.call_session import (
    CallSession, CallState, DialRequest, DirectoryConfig, SessionEnded, SessionStarted,
    UploadOutcome, now_ms
)
from call_bridge.directory_scanner import DirectoryScanner
from call_bridge.permissions import CALL_PHONE, GrantAllPermissions, acquire_permissions
from call_bridge.recording_locator import RecordingLocator
from call_bridge.remote_command_channel import RemoteCommandChannel
from call_bridge.upload_coordinator import UploadCoordinator


class DeviceBridge:
    """One active bridge per device session. init() / shutdown() are the only lifecycle calls."""

    def __init__(self, event_source=None, call_control=None, permission_provider=None,
                 directories: DirectoryConfig = None,
                 server_url: str = config.SERVER_URL,
                 filesystem=None,
                 settle_delay: float = config.SETTLE_DELAY,
                 window_ms: int = config.CORRELATION_WINDOW_MS,
                 skew_tolerance_ms: int = config.SKEW_TOLERANCE_MS,
                 max_session_lifetime: float = config.MAX_SESSION_LIFETIME,
                 max_live_call_lifetime: float = config.MAX_LIVE_CALL_LIFETIME,
                 reaper_interval: float = config.SESSION_REAPER_INTERVAL,
                 channel_factory: Callable[..., RemoteCommandChannel] = None,
                 uploader_factory: Callable[..., UploadCoordinator] = None,
                 on_outcome: Callable[[UploadOutcome], None] = None,
                 clock: Callable[[], int] = now_ms,
                 logger=None):
        self.logger = logger or logging.getLogger(__name__)
        self.event_source = event_source
        self.call_control = call_control
        self.permission_provider = permission_provider or GrantAllPermissions()
        self.directories = directories or DirectoryConfig.build()
        self.server_url = server_url
        self.settle_delay = settle_delay
        self.window_ms = window_ms
        self.skew_tolerance_ms = skew_tolerance_ms
        self.max_session_lifetime_ms = int(max_session_lifetime * 1000)
        self.max_live_call_lifetime_ms = int(max_live_call_lifetime * 1000)
        self.reaper_interval = reaper_interval
        self.channel_factory = channel_factory or RemoteCommandChannel
        self.uploader_factory = uploader_factory or UploadCoordinator
        self.on_outcome = on_outcome
        self.clock = clock

        self.scanner = DirectoryScanner(filesystem=filesystem, logger=self.logger)
        self.locator = RecordingLocator(
            scanner=self.scanner,
            window_ms=window_ms,
            skew_tolerance_ms=skew_tolerance_ms,
            logger=self.logger,
        )
        self.monitor = CallLifecycleMonitor(clock=clock, logger=self.logger)

        self.user_id: Optional[str] = None
        self.token: Optional[str] = None
        self.can_dial = False
        self.channel: Optional[RemoteCommandChannel] = None
        self.uploader: Optional[UploadCoordinator] = None
        self.sessions: Dict[str, CallSession] = {}
        self.recent_outcomes = deque(maxlen=50)

        self._initialized = False
        self._lifecycle_lock = threading.RLock()
        self._inbox: queue.Queue = queue.Queue()
        self._stop_event = threading.Event()
        self._timers: Dict[str, threading.Timer] = {}
        self._dispatcher: Optional[threading.Thread] = None
        self._reaper: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._unsubscribe = None

        self._handlers = {
            'native': self._handle_native,
            'dial': self._handle_dial,
            'settled': self._handle_settled,
            'located': self._handle_located,
            'upload_done': self._handle_upload_done,
            'reap': self._handle_reap,
        }

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def init(self, user_id: str, token: Optional[str] = None):
        """
        Start the bridge for user_id.

        Idempotent for the same user; a different user restarts the bridge.

        Raises:
            PermissionDeniedError: phone state or storage access was denied
        """
        if not user_id:
            raise ValueError("user_id is required")

        with self._lifecycle_lock:
            if self._initialized:
                if user_id == self.user_id:
                    self.logger.debug(f"[Bridge] Already initialized for {user_id}")
                    return
                self.logger.info(f"[Bridge] Switching user {self.user_id} -> {user_id}")
                self._shutdown_locked()

            self.logger.info(f"[Bridge] Initializing for user {user_id}")
            grants = acquire_permissions(self.permission_provider, logger=self.logger)
            self.can_dial = bool(grants.get(CALL_PHONE))

            self.user_id = user_id
            self.token = token
            self.sessions = {}
            self.monitor.reset()
            self._inbox = queue.Queue()
            self._stop_event.clear()

            self._executor = ThreadPoolExecutor(max_workers=config.UPLOAD_WORKERS, thread_name_prefix="BridgeWorker")
            self.uploader = self.uploader_factory(
                server_url=self.server_url,
                token=token,
                on_complete=self._on_upload_complete,
                logger=self.logger,
            )

            self._dispatcher = threading.Thread(target=self._dispatch_loop, name="BridgeDispatcher", daemon=True)
            self._dispatcher.start()
            self._reaper = threading.Thread(target=self._reap_loop, name="SessionReaper", daemon=True)
            self._reaper.start()

            self.channel = self.channel_factory(
                server_url=self.server_url,
                on_dial_request=self.on_dial_request,
                logger=self.logger,
            )
            self.channel.open(user_id, token)

            if self.event_source is not None:
                self._unsubscribe = self.event_source.subscribe(self.on_native_event)

            self._initialized = True
            self.logger.info(
                f"[Bridge] ✅ Connected & listening for {user_id} "
                f"({len(self.directories)} recording directories, remote dialing "
                f"{'enabled' if self.can_dial else 'disabled'})"
            )

    def shutdown(self):
        """Tear down the channel, timers, uploads and listeners. Safe to call twice."""
        with self._lifecycle_lock:
            if not self._initialized:
                return
            self._shutdown_locked()

    def on_native_event(self, raw_state, phone_number: Optional[str] = None):
        """Native call-state callback. Safe to call from any thread."""
        self._post('native', raw_state, phone_number)

    def on_dial_request(self, request: DialRequest):
        """Remote channel callback. Safe to call from any thread."""
        self._post('dial', request)

    def set_watch_directories(self, watch_dirs: Iterable[str], storage_root: str = config.STORAGE_ROOT):
        """Apply an updated watched-folder setting; used from the next scan on."""
        self.directories = DirectoryConfig.build(watch_dirs, storage_root=storage_root)
        self.logger.info(f"[Bridge] Watching {len(self.directories)} directories")

    def set_token(self, token: Optional[str]):
        self.token = token
        if self.uploader is not None:
            self.uploader.set_token(token)

    def get_status(self) -> dict:
        return {
            'initialized': self._initialized,
            'user_id': self.user_id,
            'channel_connected': bool(self.channel and self.channel.is_connected),
            'remote_dialing': self.can_dial,
            'active_sessions': len(self.sessions),
            'pending_settle_timers': len(self._timers),
            'directories': list(self.directories),
            'scanner': self.scanner.get_stats(),
            'uploads': self.uploader.get_stats() if self.uploader else {},
            'channel': self.channel.get_stats() if self.channel else {},
            'recent_outcomes': [o.to_payload() for o in list(self.recent_outcomes)],
        }

    # --- Dispatcher -----------------------------------------------------

    def _post(self, kind: str, *args):
        if self._dispatcher is None:
            self.logger.debug(f"[Bridge] Not running - dropping {kind} input")
            return
        self._inbox.put((kind, args))

    def _dispatch_loop(self):
        inbox = self._inbox
        while True:
            item = inbox.get()
            try:
                if item is None:
                    break
                kind, args = item
                self._handlers[kind](*args)
            except Exception as e:
                self.logger.error(f"[Bridge] Error handling {item[0] if item else item}: {e}", exc_info=True)
            finally:
                inbox.task_done()

    def _reap_loop(self):
        while not self._stop_event.wait(self.reaper_interval):
            self._post('reap')

    def _handle_native(self, raw_state, phone_number):
        event = self.monitor.on_native_event(raw_state, phone_number)
        if isinstance(event, SessionStarted):
            self.sessions[event.call_id] = event.session
        elif isinstance(event, SessionEnded):
            self._handle_session_ended(event)

    def _handle_session_ended(self, event: SessionEnded):
        session = self.sessions.setdefault(event.call_id, event.session)
        if session.correlation_started:
            self.logger.info(f"[Bridge] Duplicate end for {event.call_id} ignored")
            return
        session.correlation_started = True

        self.logger.info(f"[Bridge] Call {event.call_id} ended. Waiting {self.settle_delay:.1f}s for recording to be saved...")
        timer = threading.Timer(self.settle_delay, self._post, args=('settled', event.call_id))
        timer.daemon = True
        self._timers[event.call_id] = timer
        timer.start()

    def _handle_settled(self, call_id: str):
        self._timers.pop(call_id, None)
        session = self.sessions.get(call_id)
        if session is None or session.torn_down:
            self.logger.debug(f"[Bridge] Settle timer for dropped session {call_id} ignored")
            return

        self.logger.info(f"[Bridge] Scanning for recording of {call_id}...")
        try:
            future = self._executor.submit(
                self.locator.locate, session.ended_at, list(self.directories),
                self.window_ms, self.skew_tolerance_ms,
            )
        except RuntimeError as e:
            self.logger.warning(f"[Bridge] Cannot scan for {call_id}: {e}")
            return
        future.add_done_callback(lambda f: self._post('located', call_id, f))

    def _handle_located(self, call_id: str, future):
        session = self.sessions.get(call_id)
        if session is None or session.torn_down:
            self.logger.debug(f"[Bridge] Late scan result for dropped session {call_id} discarded")
            return

        try:
            match = future.result()
        except Exception as e:
            self.logger.error(f"[Bridge] Recording scan failed for {call_id}: {e}", exc_info=True)
            match = None

        if match is None:
            self.logger.info(f"[Bridge] No recent recording found for {call_id}")
            self._report(UploadOutcome(
                call_id=call_id,
                phone_number=session.phone_number,
                status=UploadOutcome.NO_RECORDING,
            ))
            self._drop(call_id)
            return

        self.uploader.submit(session, match)

    def _on_upload_complete(self, outcome: UploadOutcome):
        # Runs on an upload worker; hand back to the dispatcher
        self._post('upload_done', outcome)

    def _handle_upload_done(self, outcome: UploadOutcome):
        session = self.sessions.get(outcome.call_id)
        if session is None or session.torn_down:
            self.logger.debug(f"[Bridge] Late upload result for dropped session {outcome.call_id} discarded")
            return
        self._report(outcome)
        self._drop(outcome.call_id)

    def _handle_dial(self, request: DialRequest):
        replaced = self.monitor.expect_remote_call(request)
        if replaced and replaced in self.sessions:
            self.sessions[request.call_id] = self.sessions.pop(replaced)

        if not self.can_dial:
            self.logger.warning(f"[Bridge] ⚠️ Call permission denied - not dialing {request.phone_number}")
            return
        if self.call_control is None:
            self.logger.warning(f"[Bridge] ⚠️ No call control available - not dialing {request.phone_number}")
            return
        # Dial commands can block for seconds; keep the dispatcher free
        try:
            self._executor.submit(self._dial, request)
        except RuntimeError as e:
            self.logger.warning(f"[Bridge] Cannot dial {request.phone_number}: {e}")

    def _dial(self, request: DialRequest):
        try:
            self.logger.info(f"[Bridge] 📞 Dialing {request.phone_number} for CRM call {request.call_id}")
            self.call_control.dial(request.phone_number)
        except Exception as e:
            self.logger.error(f"[Bridge] ❌ Failed to dial {request.phone_number}: {e}", exc_info=True)

    def _handle_reap(self):
        now = self.clock()
        for call_id, session in list(self.sessions.items()):
            if session.state is CallState.DISCONNECTED:
                # Ended calls get MAX_SESSION_LIFETIME to finish correlation and upload
                if session.ended_at is None or now - session.ended_at <= self.max_session_lifetime_ms:
                    continue
                limit = self.max_session_lifetime_ms
                age = "since call end"
            elif now - session.started_at > self.max_live_call_lifetime_ms:
                # End event never arrived
                self.monitor.forget(session)
                limit = self.max_live_call_lifetime_ms
                age = "without an end event"
            else:
                continue

            self.logger.warning(
                f"[Bridge] ⚠️ Session {call_id} exceeded {limit // 1000}s {age} "
                f"(state={session.state.value}, upload={session.upload_status.value}) - dropping"
            )
            self._drop(call_id)

    def _report(self, outcome: UploadOutcome):
        self.recent_outcomes.append(outcome)
        self.logger.info(f"[Bridge] Outcome for {outcome.call_id}: {outcome.status}")
        if self.channel is not None:
            self.channel.notify(config.CHANNEL_STATUS_EVENT, outcome.to_payload())
        if self.on_outcome:
            try:
                self.on_outcome(outcome)
            except Exception as e:
                self.logger.error(f"[Bridge] Outcome callback failed: {e}", exc_info=True)

    def _drop(self, call_id: str):
        session = self.sessions.pop(call_id, None)
        timer = self._timers.pop(call_id, None)
        if timer is not None:
            timer.cancel()
        if session is not None:
            with session.lock:
                session.torn_down = True
        if self.uploader is not None:
            self.uploader.cancel(call_id)

    # --- Shutdown -------------------------------------------------------

    def _shutdown_locked(self):
        self.logger.info(f"[Bridge] Shutting down for user {self.user_id}...")
        self._initialized = False

        if self._unsubscribe is not None:
            try:
                self._unsubscribe()
            except Exception as e:
                self.logger.warning(f"[Bridge] Error removing call listener: {e}")
            self._unsubscribe = None

        if self.channel is not None:
            self.channel.close()

        self._stop_event.set()
        self._inbox.put(None)
        if self._dispatcher and self._dispatcher is not threading.current_thread():
            self._dispatcher.join(timeout=5)

        for timer in list(self._timers.values()):
            timer.cancel()
        self._timers.clear()

        for session in list(self.sessions.values()):
            with session.lock:
                session.torn_down = True
        self.sessions.clear()
        self.monitor.reset()

        if self.uploader is not None:
            self.uploader.shutdown()
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

        if self._reaper and self._reaper is not threading.current_thread():
            self._reaper.join(timeout=1)
        self._dispatcher = None
        self._reaper = None
        self.logger.info("[Bridge] Shutdown complete")
