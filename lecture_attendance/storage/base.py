from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, Tuple, Type, TypeVar

from ..exceptions import StorageError
from ..matching import CohortMember
from ..models import Group, Membership, PresenceEvent, Session, Subject

R = TypeVar("R")


@dataclass(frozen=True)
class Collection(Generic[R]):
    name: str
    record_type: Type[R]
    unique_keys: Tuple[Tuple[str, ...], ...]
    indexes: Tuple[str, ...]

    def to_row(self, record: R) -> Dict[str, Any]:
        return record.to_row()  # type: ignore[attr-defined]

    def from_row(self, row: Dict[str, Any]) -> R:
        return self.record_type.from_row(row)  # type: ignore[attr-defined]

    def check_filters(self, filters: Dict[str, Any]) -> None:
        unknown = set(filters) - set(self.indexes) - {"id"}
        if unknown:
            raise StorageError(f"{self.name} has no index on {', '.join(sorted(unknown))}.")


SUBJECTS: Collection[Subject] = Collection("subjects", Subject, (("external_key",),), ("external_key",))
GROUPS: Collection[Group] = Collection("groups", Group, (("code",),), ("code",))
SESSIONS: Collection[Session] = Collection("sessions", Session, (), ("group_id", "starts_at", "events_enabled"))
MEMBERSHIPS: Collection[Membership] = Collection(
    "memberships",
    Membership,
    (("subject_id", "group_id"),),
    ("subject_id", "group_id"),
)
PRESENCE_EVENTS: Collection[PresenceEvent] = Collection(
    "presence_events",
    PresenceEvent,
    (("session_id", "subject_id"),),
    ("session_id", "subject_id", "marked_at"),
)

COLLECTIONS: Dict[str, Collection[Any]] = {
    c.name: c for c in (SUBJECTS, GROUPS, SESSIONS, MEMBERSHIPS, PRESENCE_EVENTS)
}


def get_collection(name: str) -> Collection[Any]:
    try:
        return COLLECTIONS[name]
    except KeyError as exc:
        raise StorageError(f"Unknown collection '{name}'.") from exc


@dataclass
class UpsertResult(Generic[R]):
    record: R
    created: bool


@dataclass
class RecordedPresence:
    event: PresenceEvent
    created: bool
    total_count: int


class StorageGateway(ABC):
    """Uniform record contract shared by the local and remote backends.

    Identifier formats differ per backend; callers must treat ids as opaque
    strings. ``upsert_by_unique_key`` inserts once and leaves an existing row
    untouched on repeat, which is what keeps presence events exactly-once
    across devices.
    """

    mode: str = ""

    @abstractmethod
    def get_all(self, collection: Collection[R], **filters: Any) -> List[R]:
        ...

    @abstractmethod
    def get_by_id(self, collection: Collection[R], record_id: str) -> Optional[R]:
        ...

    @abstractmethod
    def create(self, collection: Collection[R], record: R) -> R:
        ...

    @abstractmethod
    def update(self, collection: Collection[R], record_id: str, changes: Dict[str, Any]) -> R:
        ...

    @abstractmethod
    def delete(self, collection: Collection[R], record_id: str) -> bool:
        ...

    @abstractmethod
    def upsert_by_unique_key(self, collection: Collection[R], record: R) -> UpsertResult[R]:
        ...

    @abstractmethod
    def count(self, collection: Collection[Any], **filters: Any) -> int:
        ...

    def close(self) -> None:
        return None

    def __enter__(self) -> "StorageGateway":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def record_presence(self, event: PresenceEvent) -> RecordedPresence:
        result = self.upsert_by_unique_key(PRESENCE_EVENTS, event)
        total = self.count(PRESENCE_EVENTS, session_id=event.session_id)
        return RecordedPresence(event=result.record, created=result.created, total_count=total)

    def find_subject_by_key(self, external_key: str) -> Optional[Subject]:
        rows = self.get_all(SUBJECTS, external_key=external_key.strip())
        return rows[0] if rows else None

    def groups_for_subject(self, subject_id: str) -> List[str]:
        return [m.group_id for m in self.get_all(MEMBERSHIPS, subject_id=subject_id)]

    def sessions_for_group(self, group_id: str) -> List[Session]:
        sessions = self.get_all(SESSIONS, group_id=group_id)
        return sorted(sessions, key=lambda s: s.starts_at, reverse=True)

    def events_for_session(self, session_id: str) -> List[PresenceEvent]:
        return self.get_all(PRESENCE_EVENTS, session_id=session_id)

    def cohort_for_session(self, session_id: str) -> List[CohortMember]:
        """Enrolled subjects of the session's group that have an embedding."""
        session = self.get_by_id(SESSIONS, session_id)
        if session is None:
            return []

        cohort: List[CohortMember] = []
        for membership in self.get_all(MEMBERSHIPS, group_id=session.group_id):
            subject = self.get_by_id(SUBJECTS, membership.subject_id)
            if subject is None or subject.embedding is None:
                continue
            cohort.append(
                CohortMember(
                    subject_id=subject.id or "",
                    embedding=subject.embedding,
                    display_name=subject.display_name,
                    external_key=subject.external_key,
                )
            )
        return cohort
