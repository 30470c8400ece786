from __future__ import annotations

import dataclasses
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from ..exceptions import ConflictError, NotFoundError, PresenceRejected, StorageError, TransportError
from ..models import PresenceEvent, to_iso
from .base import PRESENCE_EVENTS, Collection, R, RecordedPresence, StorageGateway, UpsertResult


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return to_iso(value) or ""
    return str(value)


class RemoteStore(StorageGateway):
    """HTTP client for the attendance server. Identifiers are assigned server-side.

    ``session`` can be any object with a requests-compatible ``request`` method.
    """

    mode = "remote"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        kiosk_token: str = "",
        api_prefix: str = "/api/v1",
        timeout_seconds: float = 8.0,
        session: Any = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_prefix = api_prefix
        self.api_key = api_key
        self.kiosk_token = kiosk_token
        self.timeout_seconds = timeout_seconds
        self.session = session if session is not None else requests.Session()
        self._session_lock = threading.Lock()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{self.api_prefix}{path}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        request_headers = {"Authorization": f"Bearer {self.api_key}"}
        request_headers.update(headers or {})
        query = None if not params else {key: _query_value(value) for key, value in params.items()}
        try:
            with self._session_lock:
                resp = self.session.request(
                    method,
                    self._url(path),
                    params=query,
                    json=payload,
                    headers=request_headers,
                    timeout=self.timeout_seconds,
                )
        except requests.RequestException as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        if resp.status_code >= 500:
            raise TransportError(f"{method} {path} failed with {resp.status_code}: {self._detail(resp)}")
        if resp.status_code == 401:
            raise TransportError(f"{method} {path} was rejected: {self._detail(resp)}")
        return resp

    @staticmethod
    def _detail(resp) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.text
        if isinstance(body, dict):
            return str(body.get("detail") or body.get("error") or body)
        return str(body)

    def _raise_for_status(self, resp, action: str) -> None:
        if resp.status_code < 400:
            return
        detail = self._detail(resp)
        if resp.status_code == 404:
            raise NotFoundError(f"Failed to {action}: {detail}")
        if resp.status_code == 409:
            raise ConflictError(f"Failed to {action}: {detail}")
        raise StorageError(f"Failed to {action}: {detail}")

    def get_all(self, collection: Collection[R], **filters: Any) -> List[R]:
        collection.check_filters(filters)
        resp = self._request("GET", f"/{collection.name}", params=filters)
        self._raise_for_status(resp, f"load {collection.name}")
        return [collection.from_row(row) for row in resp.json()]

    def get_by_id(self, collection: Collection[R], record_id: str) -> Optional[R]:
        resp = self._request("GET", f"/{collection.name}/{record_id}")
        if resp.status_code == 404:
            return None
        self._raise_for_status(resp, f"load {collection.name} {record_id}")
        return collection.from_row(resp.json())

    def count(self, collection: Collection[Any], **filters: Any) -> int:
        collection.check_filters(filters)
        resp = self._request("GET", f"/{collection.name}/count", params=filters)
        self._raise_for_status(resp, f"count {collection.name}")
        return int(resp.json()["count"])

    def create(self, collection: Collection[R], record: R) -> R:
        row = collection.to_row(record)
        row.pop("id", None)
        resp = self._request("POST", f"/{collection.name}", payload=row)
        self._raise_for_status(resp, f"create {collection.name}")
        return collection.from_row(resp.json())

    def update(self, collection: Collection[R], record_id: str, changes: Dict[str, Any]) -> R:
        existing = self.get_by_id(collection, record_id)
        if existing is None:
            raise NotFoundError(f"{collection.name} {record_id} not found.")
        try:
            updated = dataclasses.replace(existing, **changes)
        except TypeError as exc:
            raise StorageError(f"Invalid {collection.name} update: {exc}") from exc

        row = collection.to_row(updated)
        row.pop("id", None)
        resp = self._request("PATCH", f"/{collection.name}/{record_id}", payload=row)
        self._raise_for_status(resp, f"update {collection.name} {record_id}")
        return collection.from_row(resp.json())

    def delete(self, collection: Collection[Any], record_id: str) -> bool:
        resp = self._request("DELETE", f"/{collection.name}/{record_id}")
        if resp.status_code == 404:
            return False
        self._raise_for_status(resp, f"delete {collection.name} {record_id}")
        return bool(resp.json().get("deleted", True))

    def upsert_by_unique_key(self, collection: Collection[R], record: R) -> UpsertResult[R]:
        row = collection.to_row(record)
        row.pop("id", None)
        resp = self._request("POST", f"/{collection.name}/upsert", payload=row)
        self._raise_for_status(resp, f"upsert {collection.name}")
        body = resp.json()
        return UpsertResult(record=collection.from_row(body["record"]), created=bool(body["created"]))

    def record_presence(self, event: PresenceEvent) -> RecordedPresence:
        payload = {
            "session_id": event.session_id,
            "subject_id": event.subject_id,
            "confidence": event.confidence,
            "method": event.method.value,
        }
        resp = self._request(
            "POST",
            "/presence/record",
            payload=payload,
            headers={"X-Kiosk-Token": self.kiosk_token},
        )
        if resp.status_code == 400:
            body = resp.json()
            raise PresenceRejected(reason=str(body.get("reason", "invalid")), message=str(body.get("detail", "")))
        self._raise_for_status(resp, "record presence")

        body = resp.json()
        return RecordedPresence(
            event=PRESENCE_EVENTS.from_row(body["event"]),
            created=bool(body["created"]),
            total_count=int(body["total_count"]),
        )

    def health(self) -> bool:
        try:
            resp = self._request("GET", "/health")
        except TransportError:
            return False
        return resp.status_code == 200

    def close(self) -> None:
        close = getattr(self.session, "close", None)
        if callable(close):
            close()
