from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Union

import cv2
import numpy as np

from .exceptions import AttendanceError, ConflictError, FaceDetectionError, NoFaceDetected, NotFoundError
from .face import MIN_FACE_SIZE, EmbeddingExtractor, ExtractionMode, FaceModel, FaceModelLoader, face_model_loader
from .logger import setup_logger
from .models import Membership, Subject, utc_now
from .storage import GROUPS, MEMBERSHIPS, SUBJECTS, StorageGateway

ImageInput = Union[np.ndarray, bytes, str, Path]


def decode_image(image: ImageInput) -> np.ndarray:
    """Return a BGR frame from an array, encoded image bytes or an image path."""
    if isinstance(image, np.ndarray):
        frame = image
    elif isinstance(image, (bytes, bytearray)):
        buffer = np.frombuffer(bytes(image), dtype=np.uint8)
        frame = cv2.imdecode(buffer, cv2.IMREAD_COLOR) if buffer.size else None
    else:
        path = Path(image)
        if not path.is_file():
            raise AttendanceError(f"Image file not found: {path}")
        frame = cv2.imread(str(path), cv2.IMREAD_COLOR)

    if frame is None or frame.size == 0:
        raise FaceDetectionError("Could not decode the enrollment image.")
    if frame.ndim != 3 or frame.shape[2] != 3:
        raise FaceDetectionError("Enrollment image must be a 3-channel colour image.")
    return frame


class EnrollmentService:
    """Subject and membership management. The face model is only loaded for image work."""

    def __init__(
        self,
        gateway: StorageGateway,
        model: Optional[FaceModel] = None,
        min_face_size: int = MIN_FACE_SIZE,
        model_loader: Optional[FaceModelLoader] = None,
    ):
        self.gateway = gateway
        self.min_face_size = min_face_size
        self.model_loader = model_loader or face_model_loader
        self._model = model
        self._extractor: Optional[EmbeddingExtractor] = None
        self.logger = setup_logger(self.__class__.__name__)

    @property
    def extractor(self) -> EmbeddingExtractor:
        if self._extractor is None:
            model = self._model if self._model is not None else self.model_loader.load()
            self._extractor = EmbeddingExtractor(model, min_face_size=self.min_face_size)
        return self._extractor

    def _embedding_from(self, image: ImageInput) -> List[float]:
        frame = decode_image(image)
        result = self.extractor.extract(frame, ExtractionMode.ENROLLMENT)
        if result is None:
            raise NoFaceDetected("No face detected in the image.")
        return [float(v) for v in result.embedding]

    def enroll(self, external_key: str, display_name: str, image: ImageInput) -> Subject:
        external_key = external_key.strip()
        display_name = display_name.strip()
        if not external_key:
            raise AttendanceError("external_key cannot be empty.")
        if not display_name:
            raise AttendanceError("display_name cannot be empty.")

        if self.gateway.find_subject_by_key(external_key) is not None:
            raise ConflictError(f"Subject '{external_key}' is already enrolled.")

        embedding = self._embedding_from(image)
        subject = self.gateway.create(
            SUBJECTS,
            Subject(
                external_key=external_key,
                display_name=display_name,
                embedding=embedding,
                created_at=utc_now(),
            ),
        )
        self.logger.info("Enrolled subject %s (%s) as %s", external_key, display_name, subject.id)
        return subject

    def re_enroll(self, external_key: str, image: ImageInput) -> Subject:
        subject = self._require_subject(external_key)
        embedding = self._embedding_from(image)
        updated = self.gateway.update(SUBJECTS, subject.id or "", {"embedding": embedding})
        self.logger.info("Re-enrolled subject %s", subject.external_key)
        return updated

    def rename(self, external_key: str, display_name: str) -> Subject:
        if not display_name.strip():
            raise AttendanceError("display_name cannot be empty.")
        subject = self._require_subject(external_key)
        return self.gateway.update(SUBJECTS, subject.id or "", {"display_name": display_name.strip()})

    def delete(self, external_key: str) -> None:
        subject = self._require_subject(external_key)
        self.gateway.delete(SUBJECTS, subject.id or "")
        self.logger.info("Deleted subject %s with its memberships and presence events", subject.external_key)

    def add_to_group(self, external_key: str, group_id: str) -> Membership:
        subject = self._require_subject(external_key)
        if self.gateway.get_by_id(GROUPS, group_id) is None:
            raise NotFoundError(f"Group {group_id} not found.")
        result = self.gateway.upsert_by_unique_key(
            MEMBERSHIPS,
            Membership(subject_id=subject.id or "", group_id=group_id, created_at=utc_now()),
        )
        if result.created:
            self.logger.info("Subject %s joined group %s", subject.external_key, group_id)
        return result.record

    def remove_from_group(self, external_key: str, group_id: str) -> bool:
        subject = self._require_subject(external_key)
        memberships = self.gateway.get_all(MEMBERSHIPS, subject_id=subject.id, group_id=group_id)
        removed = False
        for membership in memberships:
            removed = self.gateway.delete(MEMBERSHIPS, membership.id or "") or removed
        return removed

    def find(self, external_key: str) -> Optional[Subject]:
        return self.gateway.find_subject_by_key(external_key)

    def _require_subject(self, external_key: str) -> Subject:
        subject = self.gateway.find_subject_by_key(external_key)
        if subject is None:
            raise NotFoundError(f"Subject '{external_key.strip()}' not found.")
        return subject
