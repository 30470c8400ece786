from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models import PresenceMethod, ensure_utc, utc_now


class RowIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    created_at: datetime | None = None

    def to_values(self) -> Dict[str, Any]:
        values = self.model_dump(mode="python")
        if values.get("created_at") is None:
            values["created_at"] = utc_now()
        return {key: ensure_utc(value) if isinstance(value, datetime) else value for key, value in values.items()}


class SubjectIn(RowIn):
    external_key: str = Field(min_length=1, max_length=64)
    display_name: str = Field(min_length=1, max_length=120)
    embedding: list[float] | None = None

    @field_validator("external_key", "display_name")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class GroupIn(RowIn):
    code: str = Field(min_length=1, max_length=32)
    title: str = Field(min_length=1, max_length=200)
    owner: str = ""


class SessionIn(RowIn):
    group_id: str
    starts_at: datetime
    ends_at: datetime
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    radius_m: float | None = Field(default=None, gt=0)
    events_enabled: bool = False
    room: str | None = None


class MembershipIn(RowIn):
    subject_id: str
    group_id: str


class PresenceEventIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    session_id: str
    subject_id: str
    marked_at: datetime | None = None
    confidence: float | None = None
    method: PresenceMethod = PresenceMethod.FACE

    def to_values(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "subject_id": self.subject_id,
            "marked_at": ensure_utc(self.marked_at or utc_now()),
            "confidence": self.confidence,
            "method": self.method.value,
        }


class RecordPresenceIn(BaseModel):
    session_id: str = Field(min_length=1)
    subject_id: str = Field(min_length=1)
    confidence: float | None = None
    method: PresenceMethod = PresenceMethod.FACE


SCHEMAS: Dict[str, Type[BaseModel]] = {
    "subjects": SubjectIn,
    "groups": GroupIn,
    "sessions": SessionIn,
    "memberships": MembershipIn,
    "presence_events": PresenceEventIn,
}
