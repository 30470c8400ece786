from __future__ import annotations

import dataclasses
import random
import sqlite3
import string
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import numpy as np

from ..exceptions import ConflictError, NotFoundError, StorageError
from ..models import to_iso, utc_now
from .base import Collection, R, StorageGateway, UpsertResult

_ID_ALPHABET = string.digits + string.ascii_lowercase

SCHEMA = """
CREATE TABLE IF NOT EXISTS "subjects" (
    id TEXT PRIMARY KEY,
    external_key TEXT NOT NULL,
    display_name TEXT NOT NULL,
    embedding BLOB,
    embedding_dim INTEGER,
    created_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_subjects_external_key ON "subjects"(external_key);

CREATE TABLE IF NOT EXISTS "groups" (
    id TEXT PRIMARY KEY,
    code TEXT NOT NULL,
    title TEXT NOT NULL,
    owner TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_groups_code ON "groups"(code);

CREATE TABLE IF NOT EXISTS "sessions" (
    id TEXT PRIMARY KEY,
    group_id TEXT NOT NULL REFERENCES "groups"(id) ON DELETE CASCADE,
    starts_at TEXT NOT NULL,
    ends_at TEXT NOT NULL,
    latitude REAL,
    longitude REAL,
    radius_m REAL,
    events_enabled INTEGER NOT NULL DEFAULT 0,
    room TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sessions_group_id ON "sessions"(group_id);
CREATE INDEX IF NOT EXISTS idx_sessions_starts_at ON "sessions"(starts_at);
CREATE INDEX IF NOT EXISTS idx_sessions_events_enabled ON "sessions"(events_enabled);

CREATE TABLE IF NOT EXISTS "memberships" (
    id TEXT PRIMARY KEY,
    subject_id TEXT NOT NULL REFERENCES "subjects"(id) ON DELETE CASCADE,
    group_id TEXT NOT NULL REFERENCES "groups"(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_memberships_subject_group ON "memberships"(subject_id, group_id);
CREATE INDEX IF NOT EXISTS idx_memberships_group_id ON "memberships"(group_id);

CREATE TABLE IF NOT EXISTS "presence_events" (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES "sessions"(id) ON DELETE CASCADE,
    subject_id TEXT NOT NULL REFERENCES "subjects"(id) ON DELETE CASCADE,
    marked_at TEXT NOT NULL,
    confidence REAL,
    method TEXT NOT NULL DEFAULT 'face'
);
-- One presence event per (session, subject).
CREATE UNIQUE INDEX IF NOT EXISTS idx_presence_events_session_subject
    ON "presence_events"(session_id, subject_id);
CREATE INDEX IF NOT EXISTS idx_presence_events_subject_id ON "presence_events"(subject_id);
CREATE INDEX IF NOT EXISTS idx_presence_events_marked_at ON "presence_events"(marked_at);
"""


def generate_id() -> str:
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"{int(time.time() * 1000)}-{suffix}"


def _encode_value(key: str, value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if key == "events_enabled" and value is not None:
        return int(bool(value))
    return value


def _encode_row(row: Dict[str, Any]) -> Dict[str, Any]:
    encoded = {key: _encode_value(key, value) for key, value in row.items()}
    if "embedding" in encoded:
        vector = encoded["embedding"]
        if vector is None:
            encoded["embedding_dim"] = None
        else:
            array = np.asarray(vector, dtype=np.float32).reshape(-1)
            encoded["embedding"] = array.tobytes()
            encoded["embedding_dim"] = int(array.size)
    return encoded


def _decode_row(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    if "embedding" in data:
        blob = data.pop("embedding")
        dim = data.pop("embedding_dim", None)
        data["embedding"] = (
            None if blob is None else np.frombuffer(blob, dtype=np.float32, count=dim).tolist()
        )
    if "events_enabled" in data:
        data["events_enabled"] = bool(data["events_enabled"])
    return data


class LocalStore(StorageGateway):
    """Embedded single-file backend. Identifiers are generated client-side."""

    mode = "local"

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=5)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    @contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to open database {self.db_path}: {exc}") from exc
        try:
            with conn:
                yield conn
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" in str(exc):
                raise ConflictError(f"Failed to {action}: {exc}") from exc
            raise StorageError(f"Failed to {action}: {exc}") from exc
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to {action}: {exc}") from exc
        finally:
            conn.close()

    def _initialize(self) -> None:
        with self._transaction("initialize database") as conn:
            conn.executescript(SCHEMA)

    @staticmethod
    def _where(collection: Collection[Any], filters: Dict[str, Any]) -> tuple[str, list[Any]]:
        collection.check_filters(filters)
        if not filters:
            return "", []
        clauses = [f"{key} = ?" for key in filters]
        params = [_encode_value(key, value) for key, value in filters.items()]
        return " WHERE " + " AND ".join(clauses), params

    def get_all(self, collection: Collection[R], **filters: Any) -> List[R]:
        where, params = self._where(collection, filters)
        with self._transaction(f"load {collection.name}") as conn:
            rows = conn.execute(
                f'SELECT * FROM "{collection.name}"{where} ORDER BY rowid ASC',
                params,
            ).fetchall()
        return [collection.from_row(_decode_row(row)) for row in rows]

    def get_by_id(self, collection: Collection[R], record_id: str) -> Optional[R]:
        with self._transaction(f"load {collection.name} {record_id}") as conn:
            row = conn.execute(
                f'SELECT * FROM "{collection.name}" WHERE id = ?',
                (record_id,),
            ).fetchone()
        if row is None:
            return None
        return collection.from_row(_decode_row(row))

    def count(self, collection: Collection[Any], **filters: Any) -> int:
        where, params = self._where(collection, filters)
        with self._transaction(f"count {collection.name}") as conn:
            row = conn.execute(f'SELECT COUNT(*) AS c FROM "{collection.name}"{where}', params).fetchone()
        return int(row["c"])

    def _prepare_insert(self, collection: Collection[R], record: R) -> Dict[str, Any]:
        row = collection.to_row(record)
        row["id"] = generate_id()
        if "created_at" in row and row["created_at"] is None:
            row["created_at"] = to_iso(utc_now())
        return _encode_row(row)

    def create(self, collection: Collection[R], record: R) -> R:
        row = self._prepare_insert(collection, record)
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        with self._transaction(f"create {collection.name}") as conn:
            conn.execute(
                f'INSERT INTO "{collection.name}" ({columns}) VALUES ({placeholders})',
                tuple(row.values()),
            )
            stored = conn.execute(
                f'SELECT * FROM "{collection.name}" WHERE id = ?',
                (row["id"],),
            ).fetchone()
        return collection.from_row(_decode_row(stored))

    def update(self, collection: Collection[R], record_id: str, changes: Dict[str, Any]) -> R:
        existing = self.get_by_id(collection, record_id)
        if existing is None:
            raise NotFoundError(f"{collection.name} {record_id} not found.")
        try:
            updated = dataclasses.replace(existing, **changes)
        except TypeError as exc:
            raise StorageError(f"Invalid {collection.name} update: {exc}") from exc

        row = _encode_row(collection.to_row(updated))
        row.pop("id", None)
        assignments = ", ".join(f"{key} = ?" for key in row)
        with self._transaction(f"update {collection.name} {record_id}") as conn:
            conn.execute(
                f'UPDATE "{collection.name}" SET {assignments} WHERE id = ?',
                (*row.values(), record_id),
            )
        return self.get_by_id(collection, record_id)  # type: ignore[return-value]

    def delete(self, collection: Collection[Any], record_id: str) -> bool:
        with self._transaction(f"delete {collection.name} {record_id}") as conn:
            cursor = conn.execute(f'DELETE FROM "{collection.name}" WHERE id = ?', (record_id,))
            return cursor.rowcount > 0

    def upsert_by_unique_key(self, collection: Collection[R], record: R) -> UpsertResult[R]:
        if not collection.unique_keys:
            raise StorageError(f"{collection.name} has no unique key to upsert on.")
        key_columns = collection.unique_keys[0]

        row = self._prepare_insert(collection, record)
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        lookup = " AND ".join(f"{key} = ?" for key in key_columns)
        key_values = tuple(row[key] for key in key_columns)

        with self._transaction(f"upsert {collection.name}") as conn:
            cursor = conn.execute(
                f"""
                INSERT INTO "{collection.name}" ({columns}) VALUES ({placeholders})
                ON CONFLICT({", ".join(key_columns)}) DO NOTHING
                """,
                tuple(row.values()),
            )
            created = cursor.rowcount == 1
            stored = conn.execute(
                f'SELECT * FROM "{collection.name}" WHERE {lookup}',
                key_values,
            ).fetchone()
        return UpsertResult(record=collection.from_row(_decode_row(stored)), created=created)
