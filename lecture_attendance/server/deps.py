from __future__ import annotations

import secrets

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from ..config import Settings
from ..exceptions import StorageError
from ..storage import Collection, get_collection
from .db import get_db

bearer_scheme = HTTPBearer(auto_error=False)


def db_session() -> Session:
    return Depends(get_db)  # type: ignore[return-value]


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def _matches(expected: str, supplied: str | None) -> bool:
    if not expected or not supplied:
        return False
    return secrets.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))


def require_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    settings: Settings = Depends(get_app_settings),
) -> None:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token.")
    if not _matches(settings.remote_api_key, credentials.credentials):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key.")


def require_kiosk_token(
    x_kiosk_token: str | None = Header(default=None),
    settings: Settings = Depends(get_app_settings),
) -> None:
    if not _matches(settings.kiosk_token, x_kiosk_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid kiosk token.")


def resolve_collection(collection: str) -> Collection:
    try:
        return get_collection(collection)
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
