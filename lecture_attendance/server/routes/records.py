from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from pydantic import BaseModel, ValidationError
from sqlalchemy import Boolean, DateTime, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ...exceptions import StorageError
from ...models import parse_datetime
from ...storage import Collection
from ..crud import insert_or_keep
from ..deps import db_session, require_api_key, resolve_collection
from ..models import RECORD_TYPES, record_to_row
from ..schemas import SCHEMAS

logger = logging.getLogger("lecture_attendance.server.records")

router = APIRouter(tags=["records"], dependencies=[Depends(require_api_key)])


def _validate(collection: Collection, payload: Dict[str, Any]) -> BaseModel:
    try:
        return SCHEMAS[collection.name].model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=exc.errors(include_url=False, include_context=False),
        ) from exc


def _integrity_error(collection: Collection, exc: IntegrityError) -> HTTPException:
    message = str(exc.orig).lower()
    if "unique" in message or "duplicate" in message:
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Duplicate {collection.name} record.")
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid {collection.name} reference.")


def _filter_clauses(collection: Collection, request: Request) -> List[Any]:
    filters = dict(request.query_params)
    try:
        collection.check_filters(filters)
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    model = RECORD_TYPES[collection.name]
    clauses = []
    for key, raw in filters.items():
        column = model.__table__.columns[key]
        value: Any = raw
        if isinstance(column.type, Boolean):
            value = raw.strip().lower() in ("1", "true", "yes")
        elif isinstance(column.type, DateTime):
            try:
                value = parse_datetime(raw)
            except ValueError as exc:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Bad {key}: {raw}") from exc
        clauses.append(column == value)
    return clauses


def _get_or_404(db: Session, collection: Collection, record_id: str):
    row = db.get(RECORD_TYPES[collection.name], record_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{collection.name} {record_id} not found.")
    return row


@router.get("/{collection}")
def list_records(
    request: Request,
    collection: Collection = Depends(resolve_collection),
    db: Session = db_session(),
) -> list[dict]:
    model = RECORD_TYPES[collection.name]
    order_column = model.__table__.columns.get("created_at", model.__table__.columns.get("marked_at"))
    stmt = select(model).where(*_filter_clauses(collection, request)).order_by(order_column.asc())
    return [record_to_row(row) for row in db.scalars(stmt).all()]


@router.get("/{collection}/count")
def count_records(
    request: Request,
    collection: Collection = Depends(resolve_collection),
    db: Session = db_session(),
) -> dict:
    model = RECORD_TYPES[collection.name]
    stmt = select(func.count()).select_from(model).where(*_filter_clauses(collection, request))
    return {"count": int(db.scalar(stmt) or 0)}


@router.post("/{collection}/upsert")
def upsert_record(
    payload: Dict[str, Any] = Body(...),
    collection: Collection = Depends(resolve_collection),
    db: Session = db_session(),
) -> dict:
    if not collection.unique_keys:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{collection.name} has no unique key to upsert on.",
        )
    values = _validate(collection, payload).to_values()
    try:
        row, created = insert_or_keep(db, RECORD_TYPES[collection.name], collection.unique_keys[0], values)
    except IntegrityError as exc:
        db.rollback()
        raise _integrity_error(collection, exc) from exc
    return {"record": record_to_row(row), "created": created}


@router.get("/{collection}/{record_id}")
def get_record(
    record_id: str,
    collection: Collection = Depends(resolve_collection),
    db: Session = db_session(),
) -> dict:
    return record_to_row(_get_or_404(db, collection, record_id))


@router.post("/{collection}", status_code=status.HTTP_201_CREATED)
def create_record(
    payload: Dict[str, Any] = Body(...),
    collection: Collection = Depends(resolve_collection),
    db: Session = db_session(),
) -> dict:
    values = _validate(collection, payload).to_values()
    row = RECORD_TYPES[collection.name](**values)
    db.add(row)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise _integrity_error(collection, exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to create %s record", collection.name)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Database error.") from exc
    db.refresh(row)
    return record_to_row(row)


@router.patch("/{collection}/{record_id}")
def update_record(
    record_id: str,
    payload: Dict[str, Any] = Body(...),
    collection: Collection = Depends(resolve_collection),
    db: Session = db_session(),
) -> dict:
    row = _get_or_404(db, collection, record_id)
    merged = {**record_to_row(row), **payload}
    values = _validate(collection, merged).to_values()
    for key, value in values.items():
        setattr(row, key, value)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise _integrity_error(collection, exc) from exc
    db.refresh(row)
    return record_to_row(row)


@router.delete("/{collection}/{record_id}")
def delete_record(
    record_id: str,
    collection: Collection = Depends(resolve_collection),
    db: Session = db_session(),
) -> dict:
    row = _get_or_404(db, collection, record_id)
    db.delete(row)
    db.commit()
    return {"deleted": True}
