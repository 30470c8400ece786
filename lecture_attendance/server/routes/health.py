from __future__ import annotations

from fastapi import APIRouter

from ...models import to_iso, utc_now

router = APIRouter(tags=["health"])


@router.get("/health")
def health() -> dict:
    return {
        "ok": True,
        "service": "lecture-attendance",
        "timestamp": to_iso(utc_now()),
    }
