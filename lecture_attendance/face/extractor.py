from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np

from ..exceptions import FaceTooSmall, MultipleFacesDetected, NoFaceDetected
from .model import BoundingBox, FaceModel

# Pixels at the reference capture resolution (1280x720).
MIN_FACE_SIZE = 150


class ExtractionMode(str, Enum):
    LIVE = "live"
    ENROLLMENT = "enrollment"


@dataclass
class FaceResult:
    box: BoundingBox
    embedding: np.ndarray
    score: float = 0.0


class EmbeddingExtractor:
    """Applies face-count and face-size policy on top of the model collaborator.

    Enrollment needs one unambiguous face and raises otherwise. Live frames
    never raise for a missing face: ``None`` is the normal per-frame outcome.
    """

    def __init__(self, model: FaceModel, min_face_size: int = MIN_FACE_SIZE):
        self.model = model
        self.min_face_size = min_face_size

    def extract(self, image: np.ndarray, mode: ExtractionMode = ExtractionMode.LIVE) -> Optional[FaceResult]:
        if ExtractionMode(mode) is ExtractionMode.ENROLLMENT:
            return self._extract_enrollment(image)
        return self._extract_live(image)

    def _extract_enrollment(self, image: np.ndarray) -> FaceResult:
        detections = self.model.detect(image)
        if not detections:
            raise NoFaceDetected("No face detected in the image.")
        if len(detections) > 1:
            raise MultipleFacesDetected(
                f"{len(detections)} faces detected. Use an image with exactly one face."
            )

        detection = detections[0]
        if not self._large_enough(detection.box):
            raise FaceTooSmall(
                f"Face is {int(detection.box.width)}x{int(detection.box.height)}px; "
                f"at least {self.min_face_size}x{self.min_face_size}px is required. Use a closer image."
            )
        return self._embed(image, detection.box, detection.score)

    def _extract_live(self, image: np.ndarray) -> Optional[FaceResult]:
        detections = self.model.detect(image)
        if not detections:
            return None

        best = max(detections, key=lambda det: det.score)
        if not self._large_enough(best.box):
            return None
        return self._embed(image, best.box, best.score)

    def _embed(self, image: np.ndarray, box: BoundingBox, score: float) -> FaceResult:
        vector = np.asarray(self.model.embed(image, box), dtype=np.float32).reshape(-1)
        return FaceResult(box=box, embedding=vector, score=float(score))

    def _large_enough(self, box: BoundingBox) -> bool:
        return box.width >= self.min_face_size and box.height >= self.min_face_size
