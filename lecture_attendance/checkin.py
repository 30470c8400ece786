from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from .exceptions import AttendanceError, NotFoundError
from .logger import setup_logger
from .models import GeoPoint, PresenceMethod, Session, Subject, ensure_utc, utc_now
from .recorder import PresenceRecorder, RecordResult
from .storage import PRESENCE_EVENTS, SESSIONS, StorageGateway


@dataclass
class CheckinCandidate:
    session: Session
    already_recorded: bool


class CheckinService:
    """Self-service check-in from a personal device, verified by location only."""

    def __init__(
        self,
        gateway: StorageGateway,
        recorder: PresenceRecorder,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.gateway = gateway
        self.recorder = recorder
        self.clock = clock
        self.logger = setup_logger(self.__class__.__name__)

    def lookup(self, external_key: str) -> Subject:
        if not external_key.strip():
            raise AttendanceError("external_key cannot be empty.")
        subject = self.gateway.find_subject_by_key(external_key)
        if subject is None:
            raise NotFoundError(f"No subject found with key '{external_key.strip()}'.")
        return subject

    def active_sessions(self, external_key: str) -> List[CheckinCandidate]:
        """Sessions of the subject's groups that are enabled and running now."""
        subject = self.lookup(external_key)
        now = ensure_utc(self.clock())
        recorded = {event.session_id for event in self._events_for_subject(subject.id or "")}

        candidates: List[CheckinCandidate] = []
        for group_id in self.gateway.groups_for_subject(subject.id or ""):
            for session in self.gateway.sessions_for_group(group_id):
                if not session.events_enabled or not session.is_active(now):
                    continue
                candidates.append(CheckinCandidate(session=session, already_recorded=session.id in recorded))
        candidates.sort(key=lambda c: c.session.starts_at)
        return candidates

    def check_in(
        self,
        external_key: str,
        session_id: str,
        location: Optional[GeoPoint],
    ) -> RecordResult:
        subject = self.lookup(external_key)
        session = self.gateway.get_by_id(SESSIONS, session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found.")
        if session.group_id not in self.gateway.groups_for_subject(subject.id or ""):
            raise NotFoundError(f"Session {session_id} is not open to '{subject.external_key}'.")

        result = self.recorder.try_record_presence(
            session_id,
            subject.id or "",
            confidence=None,
            method=PresenceMethod.GEOFENCE,
            subject_location=location,
            verify_location=True,
        )
        self.logger.info(
            "Check-in for %s in session %s: %s", subject.external_key, session_id, result.outcome.value
        )
        return result

    def _events_for_subject(self, subject_id: str):
        return self.gateway.get_all(PRESENCE_EVENTS, subject_id=subject_id)
