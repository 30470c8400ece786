from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigError

BASE_DIR = Path(__file__).resolve().parent.parent

StorageMode = Literal["local", "remote"]

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ATTENDANCE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    data_dir: Path = BASE_DIR / "data"
    log_dir: Path = BASE_DIR / "logs"
    log_level: str = "INFO"

    # Local backend
    db_filename: str = "attendance.db"
    runtime_config_filename: str = "runtime_config.json"

    # Remote backend (client side)
    remote_base_url: str = "http://127.0.0.1:9000"
    remote_api_key: str = ""
    kiosk_token: str = ""
    request_timeout_seconds: float = 8.0

    # Remote backend (server side)
    server_database_url: str = "sqlite:///./data/attendance_server.db"
    api_prefix: str = "/api/v1"

    # Webcam settings
    camera_index: int = 0
    frame_width: int = 1280
    frame_height: int = 720
    camera_acquire_timeout_seconds: float = 5.0

    # Recognition loop
    sample_interval_seconds: float = 0.3
    inference_timeout_seconds: float = 5.0
    min_face_size: int = 150
    detection_threshold: float = 0.5

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_filename

    @property
    def runtime_config_path(self) -> Path:
        return self.data_dir / self.runtime_config_filename


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


class RuntimeConfig(BaseModel):
    """Operator-tunable values, re-read by the recognition loop on every cycle."""

    recognition_threshold: float = Field(default=0.45, ge=0.0, le=1.0)
    lockout_window_minutes: int = Field(default=10, ge=0)
    storage_mode: StorageMode = "local"

    def match_config(self) -> "MatchConfig":
        return MatchConfig(
            threshold=self.recognition_threshold,
            lockout_window=timedelta(minutes=self.lockout_window_minutes),
        )


@dataclass(frozen=True)
class MatchConfig:
    threshold: float
    lockout_window: timedelta


class RuntimeConfigStore:
    """JSON-backed runtime config that reloads itself when the file changes.

    A missing file means defaults. An unreadable or invalid file keeps the last
    good values so a half-written edit never stalls a running kiosk.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._mtime_ns: int | None = None
        self._config = RuntimeConfig()
        self._reload_if_changed()

    def current(self) -> RuntimeConfig:
        self._reload_if_changed()
        with self._lock:
            return self._config

    def match_config(self) -> MatchConfig:
        return self.current().match_config()

    def update(self, **changes) -> RuntimeConfig:
        with self._lock:
            merged = {**self._config.model_dump(), **changes}
            try:
                config = RuntimeConfig(**merged)
            except ValidationError as exc:
                raise ConfigError(f"Invalid runtime configuration: {exc}") from exc

            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(config.model_dump(), indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)

            self._config = config
            self._mtime_ns = self.path.stat().st_mtime_ns
            return config

    def _reload_if_changed(self) -> None:
        try:
            mtime_ns = self.path.stat().st_mtime_ns
        except FileNotFoundError:
            return

        with self._lock:
            if mtime_ns == self._mtime_ns:
                return
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
                self._config = RuntimeConfig(**raw)
            except (OSError, ValueError, TypeError) as exc:
                # Keep last good values; retry on next change.
                logger.warning("Ignoring unreadable runtime config %s: %s", self.path, exc)
            self._mtime_ns = mtime_ns
