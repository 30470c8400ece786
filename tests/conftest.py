from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

import cv2
import numpy as np
import pytest
from fastapi.testclient import TestClient

from lecture_attendance.config import MatchConfig, Settings
from lecture_attendance.exceptions import CameraError
from lecture_attendance.face import BoundingBox, Detection
from lecture_attendance.models import Group, Membership, Session, SessionLocation, Subject, utc_now
from lecture_attendance.server import create_app
from lecture_attendance.server.db import build_engine
from lecture_attendance.storage import GROUPS, MEMBERSHIPS, SESSIONS, SUBJECTS, LocalStore, RemoteStore

API_KEY = "test-api-key"
KIOSK_TOKEN = "test-kiosk-token"

ALICE = [1.0, 0.0, 0.0, 0.0]
BOB = [0.0, 1.0, 0.0, 0.0]


def face_image(marker: int, size: int = 200) -> np.ndarray:
    """Solid BGR image; the fake model reads the identity from the first pixel."""
    return np.full((size, size, 3), marker, dtype=np.uint8)


def encoded_face(marker: int, size: int = 200) -> bytes:
    ok, buffer = cv2.imencode(".png", face_image(marker, size))
    assert ok
    return buffer.tobytes()


class FakeFaceModel:
    """Maps the first pixel value of an image to a fixed set of faces."""

    def __init__(
        self,
        embeddings: Dict[int, Sequence[float]],
        box_size: int = 200,
        faces_per_image: int = 1,
    ):
        self.embeddings = {key: list(value) for key, value in embeddings.items()}
        self.box_size = box_size
        self.faces_per_image = faces_per_image
        self.detect_calls = 0

    def detect(self, image: np.ndarray) -> List[Detection]:
        self.detect_calls += 1
        marker = int(image[0, 0, 0])
        if marker not in self.embeddings:
            return []
        box = BoundingBox(0, 0, self.box_size, self.box_size)
        return [Detection(box=box, score=0.9 - 0.1 * i) for i in range(self.faces_per_image)]

    def embed(self, image: np.ndarray, box: BoundingBox) -> np.ndarray:
        return np.asarray(self.embeddings[int(image[0, 0, 0])], dtype=np.float32)


class FakeCamera:
    def __init__(self, frames: Optional[List[np.ndarray]] = None, fail_open: bool = False):
        self.frames = frames or [face_image(10)]
        self.fail_open = fail_open
        self.opened = False
        self.closed = False
        self.reads = 0

    def open(self) -> None:
        if self.fail_open:
            raise CameraError("Webcam index 0 is in use by another session.")
        self.opened = True

    def read(self) -> np.ndarray:
        if not self.opened or self.closed:
            raise CameraError("Webcam stream is not initialized.")
        frame = self.frames[self.reads % len(self.frames)]
        self.reads += 1
        return frame.copy()

    def close(self) -> None:
        self.closed = True


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def default_match_config() -> MatchConfig:
    return MatchConfig(threshold=0.45, lockout_window=timedelta(minutes=10))


@pytest.fixture
def store(tmp_path) -> LocalStore:
    return LocalStore(tmp_path / "attendance.db")


@pytest.fixture
def server_settings(tmp_path) -> Settings:
    return Settings(
        data_dir=tmp_path,
        remote_api_key=API_KEY,
        kiosk_token=KIOSK_TOKEN,
        server_database_url="sqlite://",
    )


@pytest.fixture
def client(server_settings) -> TestClient:
    app = create_app(server_settings, engine=build_engine("sqlite://"))
    return TestClient(app)


@pytest.fixture
def remote_store(client) -> RemoteStore:
    return RemoteStore(
        base_url="http://testserver",
        api_key=API_KEY,
        kiosk_token=KIOSK_TOKEN,
        session=client,
    )


def seed_lecture(
    gateway,
    enabled: bool = True,
    starts_at: Optional[datetime] = None,
    location: Optional[SessionLocation] = None,
):
    """Group with one session and two enrolled members (alice, bob)."""
    starts_at = starts_at or utc_now() - timedelta(hours=1)
    group = gateway.create(GROUPS, Group(code="CS101", title="Algorithms"))
    session = gateway.create(
        SESSIONS,
        Session(
            group_id=group.id,
            starts_at=starts_at,
            ends_at=starts_at + timedelta(hours=2),
            location=location,
            events_enabled=enabled,
            room="B-204",
        ),
    )
    alice = gateway.create(SUBJECTS, Subject(external_key="R001", display_name="Alice", embedding=ALICE))
    bob = gateway.create(SUBJECTS, Subject(external_key="R002", display_name="Bob", embedding=BOB))
    for subject in (alice, bob):
        gateway.create(MEMBERSHIPS, Membership(subject_id=subject.id, group_id=group.id))
    return group, session, alice, bob


LECTURE_START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
