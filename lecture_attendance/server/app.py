from __future__ import annotations

import logging

from fastapi import FastAPI
from sqlalchemy.engine import Engine

from ..config import Settings, get_settings
from .db import Base, build_engine, build_sessionmaker
from .routes import health, presence, records

logger = logging.getLogger("lecture_attendance.server")


def create_app(settings: Settings | None = None, engine: Engine | None = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level.upper())

    engine = engine or build_engine(settings.server_database_url)
    Base.metadata.create_all(bind=engine)
    if not settings.remote_api_key:
        logger.warning("ATTENDANCE_REMOTE_API_KEY is not set; record routes will reject every request.")
    if not settings.kiosk_token:
        logger.warning("ATTENDANCE_KIOSK_TOKEN is not set; the recording endpoint will reject every request.")

    app = FastAPI(title="Lecture Attendance", version="1.0.0")
    app.state.settings = settings
    app.state.engine = engine
    app.state.sessionmaker = build_sessionmaker(engine)

    # Fixed paths first; the record router matches any /{collection}.
    app.include_router(health.router, prefix=settings.api_prefix)
    app.include_router(presence.router, prefix=settings.api_prefix)
    app.include_router(records.router, prefix=settings.api_prefix)
    return app
