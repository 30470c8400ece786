from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

import numpy as np

from ..exceptions import ModelLoadError


@dataclass(frozen=True)
class BoundingBox:
    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True)
class Detection:
    box: BoundingBox
    score: float


class FaceModel(Protocol):
    """Black-box detector/embedder consumed by the extraction adapter."""

    def detect(self, image: np.ndarray) -> List[Detection]:
        ...

    def embed(self, image: np.ndarray, box: BoundingBox) -> np.ndarray:
        ...


def _default_factory() -> FaceModel:
    from .mediapipe_model import MediaPipeFaceModel

    return MediaPipeFaceModel()


class FaceModelLoader:
    """Load-once gate around the face model.

    ``load()`` is safe to call from every scheduler and thread; the factory runs
    at most once per successful load. A failed load leaves the gate open so an
    operator-triggered restart can try again.
    """

    def __init__(self, factory: Optional[Callable[[], FaceModel]] = None):
        self._factory = factory or _default_factory
        self._lock = threading.Lock()
        self._model: Optional[FaceModel] = None

    @property
    def loaded(self) -> bool:
        return self._model is not None

    def load(self) -> FaceModel:
        model = self._model
        if model is not None:
            return model

        with self._lock:
            if self._model is None:
                try:
                    self._model = self._factory()
                except ModelLoadError:
                    raise
                except Exception as exc:
                    raise ModelLoadError(f"Failed to load face model: {exc}") from exc
            return self._model


face_model_loader = FaceModelLoader()
