from ..config import Settings
from .base import (
    COLLECTIONS,
    GROUPS,
    MEMBERSHIPS,
    PRESENCE_EVENTS,
    SESSIONS,
    SUBJECTS,
    Collection,
    RecordedPresence,
    StorageGateway,
    UpsertResult,
    get_collection,
)
from .local import LocalStore, generate_id
from .remote import RemoteStore


def open_gateway(settings: Settings, storage_mode: str = "local") -> StorageGateway:
    """Pick the backend once at startup; callers only see the gateway contract."""
    if storage_mode == "remote":
        return RemoteStore(
            base_url=settings.remote_base_url,
            api_key=settings.remote_api_key,
            kiosk_token=settings.kiosk_token,
            api_prefix=settings.api_prefix,
            timeout_seconds=settings.request_timeout_seconds,
        )
    if storage_mode == "local":
        return LocalStore(settings.db_path)
    raise ValueError(f"Unknown storage mode '{storage_mode}'.")


__all__ = [
    "COLLECTIONS",
    "GROUPS",
    "MEMBERSHIPS",
    "PRESENCE_EVENTS",
    "SESSIONS",
    "SUBJECTS",
    "Collection",
    "LocalStore",
    "RecordedPresence",
    "RemoteStore",
    "StorageGateway",
    "UpsertResult",
    "generate_id",
    "get_collection",
    "open_gateway",
]
