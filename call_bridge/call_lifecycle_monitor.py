#!/usr/bin/env python3
"""
Call Lifecycle Monitor
- Maps raw native call-state codes onto a closed set of call phases
- Tracks the single current call and emits SessionStarted / SessionEnded
- Adopts server-assigned call ids for calls triggered by a remote dial request
"""

import logging
import re
import threading
from enum import Enum
from typing import Callable, Optional, Set, Union

from call_bridge import config
from call_bridge.call_session import (
    CallSession, CallState, DialRequest, SessionEnded, SessionStarted, now_ms
)


class CallPhase(Enum):
    """Normalized meaning of a raw native state code."""
    DIALING = "dialing"
    RINGING = "ringing"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"
    UNKNOWN = "unknown"


# Raw codes seen from the native layer, lowercased.
# Named codes come from the call-detection and telephony listeners,
# numeric codes are telecom Call.STATE_* values delivered as strings.
RAW_STATE_MAP = {
    'dialing': CallPhase.DIALING,
    'calladded': CallPhase.DIALING,
    'incoming': CallPhase.RINGING,
    'ringing': CallPhase.RINGING,
    'offhook': CallPhase.ACTIVE,
    'connected': CallPhase.ACTIVE,
    'active': CallPhase.ACTIVE,
    'disconnected': CallPhase.DISCONNECTED,
    'missed': CallPhase.DISCONNECTED,
    'callremoved': CallPhase.DISCONNECTED,
    'idle': CallPhase.DISCONNECTED,
    '1': CallPhase.DIALING,        # STATE_DIALING
    '9': CallPhase.DIALING,        # STATE_CONNECTING
    '8': CallPhase.DIALING,        # STATE_SELECT_PHONE_ACCOUNT
    '2': CallPhase.RINGING,        # STATE_RINGING
    '4': CallPhase.ACTIVE,         # STATE_ACTIVE
    '3': CallPhase.ACTIVE,         # STATE_HOLDING
    '7': CallPhase.DISCONNECTED,   # STATE_DISCONNECTED
    '10': CallPhase.DISCONNECTED,  # STATE_DISCONNECTING
}

_PHASE_TO_STATE = {
    CallPhase.DIALING: CallState.DIALING,
    CallPhase.RINGING: CallState.RINGING,
    CallPhase.ACTIVE: CallState.ACTIVE,
    CallPhase.DISCONNECTED: CallState.DISCONNECTED,
}


def map_raw_state(raw_state: Union[str, int, None]) -> CallPhase:
    if raw_state is None:
        return CallPhase.UNKNOWN
    return RAW_STATE_MAP.get(str(raw_state).strip().lower(), CallPhase.UNKNOWN)


def get_phone_variants(phone_number: str) -> Set[str]:
    """
    Digit-only variants of a phone number, with and without the US country code.

    Examples:
        '+1 (555) 123-4567' -> {'15551234567', '5551234567'}
        '5551234567'        -> {'5551234567', '15551234567'}
    """
    if not phone_number:
        return set()

    digits = re.sub(r'\D', '', phone_number)

    variants = set()
    if len(digits) == 10:
        variants.add(digits)
        variants.add('1' + digits)
    elif len(digits) == 11 and digits.startswith('1'):
        variants.add(digits)
        variants.add(digits[1:])
    elif digits:
        variants.add(digits)
    return variants


def phone_numbers_match(a: str, b: str) -> bool:
    return bool(get_phone_variants(a) & get_phone_variants(b))


class CallLifecycleMonitor:
    """
    State machine for the current call.

    Within the bridge every call arrives from the dispatcher thread; the lock
    covers readers on other threads and standalone use.
    """

    def __init__(self, clock: Callable[[], int] = now_ms,
                 dial_request_ttl: float = config.DIAL_REQUEST_TTL, logger=None):
        self.clock = clock
        self.dial_request_ttl_ms = int(dial_request_ttl * 1000)
        self.logger = logger or logging.getLogger(__name__)

        self.current_session: Optional[CallSession] = None
        self._pending_dial: Optional[DialRequest] = None
        self._pending_expires_at = 0
        self._lock = threading.RLock()

    def on_native_event(self, raw_state, phone_number: Optional[str] = None):
        """
        Apply one native notification.

        Returns:
            SessionStarted, SessionEnded or None
        """
        phase = map_raw_state(raw_state)
        number = (phone_number or '').strip()

        if phase is CallPhase.UNKNOWN:
            self.logger.warning(f"[Monitor] ⚠️ Ignoring unknown call state '{raw_state}' ({number or 'no number'})")
            return None

        with self._lock:
            session = self.current_session
            now = self.clock()

            if session is None:
                if phase is CallPhase.DISCONNECTED:
                    self.logger.debug(f"[Monitor] '{raw_state}' with no active call - ignored")
                    return None
                session = self._start_session(_PHASE_TO_STATE[phase], number, now)
                return SessionStarted(session.call_id, session.phone_number, session.started_at, session=session)

            if number and not session.phone_number:
                session.phone_number = number

            if phase is CallPhase.DISCONNECTED:
                previous = session.state
                session.state = CallState.DISCONNECTED
                session.ended_at = now
                self.current_session = None
                self.logger.info(
                    f"[Monitor] 📴 Call {session.call_id} ended ({previous.value} -> disconnected) "
                    f"number={session.phone_number or 'unknown'}"
                )
                return SessionEnded(session.call_id, session.phone_number, now, session=session)

            new_state = _PHASE_TO_STATE[phase]
            if session.state is CallState.ACTIVE and new_state is not CallState.ACTIVE:
                # Call waiting: a second call's ringing is folded into the current session
                self.logger.info(
                    f"[Monitor] Coalescing '{raw_state}' into active call {session.call_id}"
                )
                return None

            if session.state is not new_state:
                self.logger.info(f"[Monitor] Call {session.call_id}: {session.state.value} -> {new_state.value}")
                session.state = new_state
            return None

    def expect_remote_call(self, request: DialRequest) -> Optional[str]:
        """
        Register a server-assigned call id for the next matching call.

        If a matching call is already in progress under a synthesized id it is
        re-tagged right away.

        Returns:
            The replaced local call id when an in-progress session was re-tagged
        """
        with self._lock:
            session = self.current_session
            if (session is not None and not session.remote_initiated
                    and self._dial_matches(request, session.phone_number, session.state)):
                old_id = session.call_id
                self._adopt(session, request)
                self.logger.info(f"[Monitor] Re-tagged in-progress call {old_id} as {request.call_id}")
                return old_id

            self._pending_dial = request
            self._pending_expires_at = self.clock() + self.dial_request_ttl_ms
            self.logger.debug(f"[Monitor] Waiting for call to {request.phone_number} (callId={request.call_id})")
            return None

    def get_current_session(self) -> Optional[CallSession]:
        with self._lock:
            return self.current_session

    def forget(self, session: CallSession) -> bool:
        """Stop tracking session if it is still current (end event never arrived)."""
        with self._lock:
            if self.current_session is session:
                self.current_session = None
                return True
            return False

    def reset(self):
        with self._lock:
            self.current_session = None
            self._pending_dial = None
            self._pending_expires_at = 0

    def _start_session(self, state: CallState, number: str, now: int) -> CallSession:
        session = CallSession(
            call_id=f"local-{now}",
            phone_number=number,
            state=state,
            started_at=now,
        )

        pending = self._pending_dial
        if pending is not None:
            if now > self._pending_expires_at:
                self.logger.info(f"[Monitor] Dial request {pending.call_id} expired before a call started")
                self._pending_dial = None
            elif self._dial_matches(pending, number, state):
                self._adopt(session, pending)
                self._pending_dial = None

        self.current_session = session
        self.logger.info(
            f"[Monitor] 📞 Call {session.call_id} started ({state.value}) "
            f"number={session.phone_number or 'unknown'}"
        )
        return session

    @staticmethod
    def _dial_matches(request: DialRequest, number: str, state: CallState) -> bool:
        if number:
            return phone_numbers_match(number, request.phone_number)
        # The native layer often withholds the number on outgoing calls,
        # but an incoming ring is never the call we dialed
        return state is not CallState.RINGING

    @staticmethod
    def _adopt(session: CallSession, request: DialRequest):
        session.call_id = request.call_id
        session.remote_initiated = True
        if not session.phone_number:
            session.phone_number = request.phone_number
