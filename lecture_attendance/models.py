from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Mapping, Optional

DEFAULT_GEOFENCE_RADIUS_M = 100.0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def ensure_utc(value: datetime) -> datetime:
    # Naive timestamps are treated as UTC (sqlite drops tzinfo).
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PresenceMethod(str, Enum):
    FACE = "face"
    MANUAL = "manual"
    GEOFENCE = "geofence"


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class SessionLocation:
    latitude: float
    longitude: float
    radius_m: float = DEFAULT_GEOFENCE_RADIUS_M


@dataclass
class Subject:
    external_key: str
    display_name: str
    embedding: Optional[List[float]] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "external_key": self.external_key,
            "display_name": self.display_name,
            "embedding": None if self.embedding is None else [float(v) for v in self.embedding],
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Subject":
        embedding = row.get("embedding")
        return cls(
            id=row.get("id"),
            external_key=row["external_key"],
            display_name=row["display_name"],
            embedding=None if embedding is None else [float(v) for v in embedding],
            created_at=parse_datetime(row.get("created_at")),
        )


@dataclass
class Group:
    code: str
    title: str
    owner: str = ""
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "title": self.title,
            "owner": self.owner,
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Group":
        return cls(
            id=row.get("id"),
            code=row["code"],
            title=row["title"],
            owner=row.get("owner") or "",
            created_at=parse_datetime(row.get("created_at")),
        )


@dataclass
class Session:
    """A scheduled lecture. ``events_enabled`` gates recording independently of the time window."""

    group_id: str
    starts_at: datetime
    ends_at: datetime
    location: Optional[SessionLocation] = None
    events_enabled: bool = False
    room: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        now = ensure_utc(now)
        return ensure_utc(self.starts_at) <= now <= ensure_utc(self.ends_at)

    def to_row(self) -> dict[str, Any]:
        location = self.location
        return {
            "id": self.id,
            "group_id": self.group_id,
            "starts_at": to_iso(self.starts_at),
            "ends_at": to_iso(self.ends_at),
            "latitude": None if location is None else location.latitude,
            "longitude": None if location is None else location.longitude,
            "radius_m": None if location is None else location.radius_m,
            "events_enabled": bool(self.events_enabled),
            "room": self.room,
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Session":
        location = None
        if row.get("latitude") is not None and row.get("longitude") is not None:
            radius = row.get("radius_m")
            location = SessionLocation(
                latitude=float(row["latitude"]),
                longitude=float(row["longitude"]),
                radius_m=DEFAULT_GEOFENCE_RADIUS_M if radius is None else float(radius),
            )
        return cls(
            id=row.get("id"),
            group_id=row["group_id"],
            starts_at=parse_datetime(row["starts_at"]),
            ends_at=parse_datetime(row["ends_at"]),
            location=location,
            events_enabled=bool(row.get("events_enabled")),
            room=row.get("room"),
            created_at=parse_datetime(row.get("created_at")),
        )


@dataclass
class Membership:
    subject_id: str
    group_id: str
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "group_id": self.group_id,
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Membership":
        return cls(
            id=row.get("id"),
            subject_id=row["subject_id"],
            group_id=row["group_id"],
            created_at=parse_datetime(row.get("created_at")),
        )


@dataclass
class PresenceEvent:
    session_id: str
    subject_id: str
    marked_at: datetime = field(default_factory=utc_now)
    confidence: Optional[float] = None
    method: PresenceMethod = PresenceMethod.FACE
    id: Optional[str] = None

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "subject_id": self.subject_id,
            "marked_at": to_iso(self.marked_at),
            "confidence": None if self.confidence is None else float(self.confidence),
            "method": PresenceMethod(self.method).value,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PresenceEvent":
        confidence = row.get("confidence")
        return cls(
            id=row.get("id"),
            session_id=row["session_id"],
            subject_id=row["subject_id"],
            marked_at=parse_datetime(row["marked_at"]),
            confidence=None if confidence is None else float(confidence),
            method=PresenceMethod(row.get("method") or PresenceMethod.FACE.value),
        )
