from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models import Session as LectureSession
from ...models import utc_now
from ..crud import count_presence, insert_or_keep
from ..deps import db_session, require_kiosk_token
from ..models import PresenceEventRecord, SessionRecord, SubjectRecord, record_to_row
from ..schemas import RecordPresenceIn

logger = logging.getLogger("lecture_attendance.server.presence")

router = APIRouter(prefix="/presence", tags=["presence"])


def _rejected(reason: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": detail, "reason": reason})


@router.post("/record", dependencies=[Depends(require_kiosk_token)])
def record_presence(
    payload: Dict[str, Any] | None = Body(default=None),
    db: Session = db_session(),
):
    try:
        body = RecordPresenceIn.model_validate(payload or {})
    except ValidationError:
        return _rejected("missing_fields", "session_id and subject_id are required.")

    session_row = db.get(SessionRecord, body.session_id)
    if session_row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found.")
    if db.get(SubjectRecord, body.subject_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subject not found.")

    now = utc_now()
    session = LectureSession.from_row(record_to_row(session_row))
    if not session.events_enabled:
        return _rejected("events_disabled", "Attendance is not enabled for this session.")
    if not session.is_active(now):
        return _rejected("session_not_active", "Session is not currently active.")

    values = {
        "session_id": body.session_id,
        "subject_id": body.subject_id,
        "marked_at": now,
        "confidence": body.confidence,
        "method": body.method.value,
    }
    try:
        row, created = insert_or_keep(db, PresenceEventRecord, ("session_id", "subject_id"), values)
        total = count_presence(db, body.session_id)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to record presence for subject %s in session %s", body.subject_id, body.session_id)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to record presence.") from exc

    if created:
        logger.info("Presence recorded for subject %s in session %s", body.subject_id, body.session_id)
    return {"event": record_to_row(row), "total_count": total, "created": created}
