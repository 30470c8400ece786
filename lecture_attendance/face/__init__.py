from .extractor import MIN_FACE_SIZE, EmbeddingExtractor, ExtractionMode, FaceResult
from .model import BoundingBox, Detection, FaceModel, FaceModelLoader, face_model_loader

__all__ = [
    "MIN_FACE_SIZE",
    "BoundingBox",
    "Detection",
    "EmbeddingExtractor",
    "ExtractionMode",
    "FaceModel",
    "FaceModelLoader",
    "FaceResult",
    "face_model_loader",
]
