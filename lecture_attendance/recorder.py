from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Optional

from .config import MatchConfig
from .exceptions import NotFoundError, PresenceRejected
from .geofence import within_range
from .logger import setup_logger
from .models import GeoPoint, PresenceEvent, PresenceMethod, ensure_utc, utc_now
from .storage import SESSIONS, StorageGateway


class RecordOutcome(str, Enum):
    RECORDED = "recorded"
    ALREADY_LOCKED_OUT = "already_locked_out"
    ALREADY_RECORDED = "already_recorded"
    SESSION_NOT_ACTIVE = "session_not_active"
    SESSION_EVENTS_DISABLED = "session_events_disabled"
    OUTSIDE_GEOFENCE = "outside_geofence"


_REJECTION_OUTCOMES = {
    "session_not_active": RecordOutcome.SESSION_NOT_ACTIVE,
    "events_disabled": RecordOutcome.SESSION_EVENTS_DISABLED,
}


@dataclass
class RecordResult:
    outcome: RecordOutcome
    session_id: str
    subject_id: str
    event: Optional[PresenceEvent] = None
    total_count: Optional[int] = None

    @property
    def recorded(self) -> bool:
        return self.outcome is RecordOutcome.RECORDED


class LockoutState:
    """Last local match time per subject. Process-local and never persisted."""

    def __init__(self) -> None:
        self._last_matched: Dict[str, datetime] = {}

    def is_locked_out(self, subject_id: str, now: datetime, window: timedelta) -> bool:
        last = self._last_matched.get(subject_id)
        if last is None or window <= timedelta(0):
            return False
        return now - last < window

    def touch(self, subject_id: str, now: datetime) -> None:
        self._last_matched[subject_id] = now

    def clear(self) -> None:
        self._last_matched.clear()

    def __len__(self) -> int:
        return len(self._last_matched)


class PresenceRecorder:
    """Gatekeeper in front of the storage upsert.

    The lockout map only saves redundant writes from one device; the unique
    ``(session_id, subject_id)`` key in storage decides whether an event
    already exists.
    """

    def __init__(
        self,
        gateway: StorageGateway,
        config_provider: Callable[[], MatchConfig],
        clock: Callable[[], datetime] = utc_now,
        lockout: Optional[LockoutState] = None,
    ):
        self.gateway = gateway
        self.config_provider = config_provider
        self.clock = clock
        self.lockout = lockout if lockout is not None else LockoutState()
        self.logger = setup_logger(self.__class__.__name__)

    def try_record_presence(
        self,
        session_id: str,
        subject_id: str,
        confidence: Optional[float] = None,
        method: PresenceMethod = PresenceMethod.FACE,
        subject_location: Optional[GeoPoint] = None,
        verify_location: Optional[bool] = None,
    ) -> RecordResult:
        method = PresenceMethod(method)
        session = self.gateway.get_by_id(SESSIONS, session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found.")

        now = ensure_utc(self.clock())

        def result(outcome: RecordOutcome, **extra) -> RecordResult:
            return RecordResult(outcome=outcome, session_id=session_id, subject_id=subject_id, **extra)

        if not session.events_enabled:
            return result(RecordOutcome.SESSION_EVENTS_DISABLED)
        if not session.is_active(now):
            return result(RecordOutcome.SESSION_NOT_ACTIVE)

        config = self.config_provider()
        if self.lockout.is_locked_out(subject_id, now, config.lockout_window):
            return result(RecordOutcome.ALREADY_LOCKED_OUT)

        if verify_location is None:
            verify_location = method is PresenceMethod.GEOFENCE or subject_location is not None
        if verify_location and not within_range(subject_location, session.location):
            self.logger.info("Subject %s is outside the geofence of session %s", subject_id, session_id)
            return result(RecordOutcome.OUTSIDE_GEOFENCE)

        event = PresenceEvent(
            session_id=session_id,
            subject_id=subject_id,
            marked_at=now,
            confidence=confidence,
            method=method,
        )
        try:
            stored = self.gateway.record_presence(event)
        except PresenceRejected as exc:
            outcome = _REJECTION_OUTCOMES.get(exc.reason)
            if outcome is None:
                raise
            return result(outcome)

        self.lockout.touch(subject_id, now)
        if not stored.created:
            return result(RecordOutcome.ALREADY_RECORDED, event=stored.event, total_count=stored.total_count)

        self.logger.info(
            "Presence recorded for subject %s in session %s (method=%s, confidence=%s)",
            subject_id,
            session_id,
            method.value,
            "n/a" if confidence is None else f"{confidence:.3f}",
        )
        return result(RecordOutcome.RECORDED, event=stored.event, total_count=stored.total_count)
