from __future__ import annotations

from typing import Any, Dict, Sequence, Tuple, Type

from sqlalchemy import and_, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from .db import Base
from .models import PresenceEventRecord


def _insert_for(db: Session, model: Type[Base]):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model.__table__)
    if dialect == "sqlite":
        return sqlite.insert(model.__table__)
    raise NotImplementedError(f"Unsupported database dialect '{dialect}'.")


def insert_or_keep(
    db: Session,
    model: Type[Base],
    key_columns: Sequence[str],
    values: Dict[str, Any],
) -> Tuple[Base, bool]:
    """Insert ``values`` unless a row with the same unique key exists.

    An existing row is returned unchanged. ``created`` tells the two apart.
    """
    table = model.__table__
    stmt = _insert_for(db, model).values(**values).on_conflict_do_nothing(index_elements=list(key_columns))
    result = db.execute(stmt)
    created = result.rowcount == 1
    db.commit()

    lookup = and_(*(table.columns[key] == values[key] for key in key_columns))
    row = db.scalars(select(model).where(lookup)).one()
    return row, created


def count_presence(db: Session, session_id: str) -> int:
    stmt = select(func.count()).select_from(PresenceEventRecord).where(PresenceEventRecord.session_id == session_id)
    return int(db.scalar(stmt) or 0)
