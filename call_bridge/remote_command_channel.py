#!/usr/bin/env python3
"""
Remote Command Channel
Persistent Socket.IO connection to the CRM, keyed by user id.

- Announces presence with join_room(userId) on every (re)connect
- Forwards dial_request({phoneNumber, callId}) to the bridge
- Reconnects forever with exponential backoff while open
- Outbound status pushes are best effort: failures are logged, never raised
"""

import logging
import threading
from typing import Callable, Optional
from urllib.parse import urlencode

import socketio

from call_bridge import config
from call_bridge.call_session import DialRequest


def _default_client_factory():
    # Reconnection is driven by our own supervisor so every attempt
    # goes through the same backoff and presence announcement
    return socketio.Client(reconnection=False, logger=False, engineio_logger=False)


def parse_dial_request(data) -> Optional[DialRequest]:
    """Validate a dial_request payload. Returns None if malformed."""
    if not isinstance(data, dict):
        return None
    phone_number = str(data.get('phoneNumber') or '').strip()
    call_id = data.get('callId')
    call_id = str(call_id).strip() if call_id is not None else ''
    if not phone_number or not call_id:
        return None
    return DialRequest(phone_number=phone_number, call_id=call_id)


class RemoteCommandChannel:

    def __init__(self, server_url: str = config.SERVER_URL,
                 on_dial_request: Callable[[DialRequest], None] = None,
                 client_factory: Callable[[], "socketio.Client"] = None,
                 reconnect_base_delay: float = config.CHANNEL_RECONNECT_BASE_DELAY,
                 reconnect_max_delay: float = config.CHANNEL_RECONNECT_MAX_DELAY,
                 connect_timeout: float = config.CHANNEL_CONNECT_TIMEOUT,
                 logger=None):
        self.server_url = server_url.rstrip('/')
        self.on_dial_request = on_dial_request
        self.client_factory = client_factory or _default_client_factory
        self.reconnect_base_delay = reconnect_base_delay
        self.reconnect_max_delay = reconnect_max_delay
        self.connect_timeout = connect_timeout
        self.logger = logger or logging.getLogger(__name__)

        self.user_id: Optional[str] = None
        self.token: Optional[str] = None
        self.client = None
        self._connected = False
        self._stop_event = threading.Event()
        self._disconnected = threading.Event()
        self._supervisor: Optional[threading.Thread] = None
        self._lock = threading.Lock()

        self.stats = {
            'connects': 0,
            'connect_failures': 0,
            'disconnects': 0,
            'dial_requests': 0,
            'malformed_messages': 0,
            'notifications_sent': 0,
            'notifications_dropped': 0
        }
        self.stats_lock = threading.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connected

    def open(self, user_id: str, token: Optional[str] = None):
        """Start the supervisor thread that keeps the connection alive."""
        if self._supervisor and self._supervisor.is_alive():
            if user_id == self.user_id:
                return
            self.close()

        self.user_id = user_id
        self.token = token
        self._stop_event.clear()
        self._supervisor = threading.Thread(
            target=self._supervise,
            name=f"ChannelSupervisor-{user_id}",
            daemon=True
        )
        self._supervisor.start()
        self.logger.info(f"[Channel] Opening channel to {self.server_url} for user {user_id}")

    def close(self, timeout: float = 5.0):
        """Stop reconnecting and drop the connection."""
        self._stop_event.set()
        self._disconnected.set()
        with self._lock:
            client = self.client
        if client is not None:
            try:
                client.disconnect()
            except Exception as e:
                self.logger.debug(f"[Channel] Error during disconnect: {e}")

        supervisor = self._supervisor
        if supervisor and supervisor is not threading.current_thread():
            supervisor.join(timeout=timeout)
        self._supervisor = None
        self._connected = False
        self.logger.info("[Channel] Closed")

    def notify(self, event: str, payload: dict) -> bool:
        """Best-effort push to the CRM. Returns False if it could not be sent."""
        with self._lock:
            client = self.client
        if client is None or not self._connected:
            with self.stats_lock:
                self.stats['notifications_dropped'] += 1
            self.logger.warning(f"[Channel] ⚠️ Not connected - dropping '{event}' notification")
            return False
        try:
            client.emit(event, payload)
        except Exception as e:
            with self.stats_lock:
                self.stats['notifications_dropped'] += 1
            self.logger.warning(f"[Channel] ⚠️ Failed to send '{event}': {e}")
            return False
        with self.stats_lock:
            self.stats['notifications_sent'] += 1
        return True

    def get_stats(self):
        with self.stats_lock:
            return self.stats.copy()

    def reconnect_delay(self, failures: int) -> float:
        return min(self.reconnect_base_delay * (2 ** max(0, failures - 1)), self.reconnect_max_delay)

    def _supervise(self):
        failures = 0
        while not self._stop_event.is_set():
            self._disconnected.clear()
            client = self._new_client()
            try:
                client.connect(
                    f"{self.server_url}?{urlencode({'userId': self.user_id})}",
                    headers={'Authorization': f'Bearer {self.token}'} if self.token else {},
                    wait_timeout=self.connect_timeout,
                )
            except Exception as e:
                failures += 1
                with self.stats_lock:
                    self.stats['connect_failures'] += 1
                delay = self.reconnect_delay(failures)
                self.logger.warning(f"[Channel] ⚠️ Connect failed ({e}), retrying in {delay:.1f}s")
                self._stop_event.wait(delay)
                continue

            failures = 0
            # Blocks until the server drops us or close() is called
            self._disconnected.wait()
            if self._stop_event.is_set():
                # close() may have raced with this connect
                if client.connected:
                    try:
                        client.disconnect()
                    except Exception as e:
                        self.logger.debug(f"[Channel] Error during disconnect: {e}")
                break
            failures += 1
            delay = self.reconnect_delay(failures)
            self.logger.info(f"[Channel] Reconnecting in {delay:.1f}s")
            self._stop_event.wait(delay)

    def _new_client(self):
        client = self.client_factory()
        client.on('connect', self._on_connect)
        client.on('disconnect', self._on_disconnect)
        client.on('dial_request', self._on_dial_request)
        with self._lock:
            self.client = client
        return client

    def _on_connect(self):
        self._connected = True
        with self.stats_lock:
            self.stats['connects'] += 1
        self.logger.info(f"[Channel] ✅ Connected to {self.server_url}")
        try:
            with self._lock:
                client = self.client
            client.emit('join_room', self.user_id)
        except Exception as e:
            self.logger.warning(f"[Channel] ⚠️ Failed to announce presence: {e}")

    def _on_disconnect(self, *args):
        self._connected = False
        with self.stats_lock:
            self.stats['disconnects'] += 1
        if not self._stop_event.is_set():
            self.logger.warning(f"[Channel] ❌ Disconnected from {self.server_url}")
        self._disconnected.set()

    def _on_dial_request(self, data):
        request = parse_dial_request(data)
        if request is None:
            with self.stats_lock:
                self.stats['malformed_messages'] += 1
            self.logger.warning(f"[Channel] ⚠️ Ignoring malformed dial_request: {data!r}")
            return

        with self.stats_lock:
            self.stats['dial_requests'] += 1
        self.logger.info(f"[Channel] Dial request: {request.phone_number} (callId={request.call_id})")
        if self.on_dial_request:
            try:
                self.on_dial_request(request)
            except Exception as e:
                self.logger.error(f"[Channel] Dial request handler failed: {e}", exc_info=True)
