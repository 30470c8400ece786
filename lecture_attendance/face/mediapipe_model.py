from typing import List, Optional

import cv2
import mediapipe as mp
import numpy as np
import torch
import torch.nn.functional as f
import torchvision.models as models
from torchvision.models import ResNet18_Weights

from ..config import get_settings
from ..exceptions import FaceDetectionError, ModelLoadError
from .model import BoundingBox, Detection

INPUT_SIZE = 224
CROP_MARGIN = 1.05
IMAGENET_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
IMAGENET_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)


def default_device() -> str:
    return "cuda" if torch.cuda.is_available() else "cpu"


def face_focus_mask(size: int = INPUT_SIZE) -> np.ndarray:
    """Soft elliptical weight map, 1.0 over the face and fading to 0 at the corners."""
    mask = np.zeros((size, size), dtype=np.float32)
    center = (size // 2, size // 2)
    axes = (int(size * 0.375), int(size * 0.446))
    cv2.ellipse(mask, center, axes, 0, 0, 360, 1.0, thickness=-1)
    return cv2.GaussianBlur(mask, (0, 0), sigmaX=6.0)[..., None]


def square_crop(rgb: np.ndarray, box: BoundingBox, margin: float = CROP_MARGIN) -> np.ndarray:
    """Square crop centred on the box, clipped to the frame."""
    frame_h, frame_w = rgb.shape[:2]
    side = int(max(box.width, box.height) * margin)
    left = max(0, int(box.x + box.width / 2) - side // 2)
    top = max(0, int(box.y + box.height / 2) - side // 2)
    right = min(frame_w, left + side)
    bottom = min(frame_h, top + side)
    return rgb[top:bottom, left:right]


class MediaPipeFaceModel:
    """MediaPipe short-range face detector with a ResNet-18 embedding head.

    Frames are BGR arrays as delivered by OpenCV. Embeddings are 512-d and
    L2-normalised, so Euclidean distances fall in [0, 2].
    """

    def __init__(self, device: Optional[str] = None, detection_threshold: Optional[float] = None):
        settings = get_settings()
        self.device = torch.device(device or default_device())
        if detection_threshold is None:
            detection_threshold = settings.detection_threshold
        self.detection_threshold = detection_threshold

        try:
            self.detector = mp.solutions.face_detection.FaceDetection(
                model_selection=0,
                min_detection_confidence=detection_threshold,
            )
            self.embedder = self._build_embedder()
        except Exception as exc:
            raise ModelLoadError(f"Failed to initialize face models: {exc}") from exc

        self.clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
        self.focus = face_focus_mask()

    def _build_embedder(self) -> torch.nn.Module:
        # Drop the classifier so the pooled 512-d features come out.
        backbone = models.resnet18(weights=ResNet18_Weights.DEFAULT)
        backbone.fc = torch.nn.Identity()
        return backbone.eval().to(self.device)

    def detect(self, image: np.ndarray) -> List[Detection]:
        try:
            result = self.detector.process(cv2.cvtColor(image, cv2.COLOR_BGR2RGB))
        except Exception as exc:
            raise FaceDetectionError(f"Face detection failed: {exc}") from exc

        frame_h, frame_w = image.shape[:2]
        detections: List[Detection] = []
        for candidate in result.detections or []:
            score = float(candidate.score[0]) if candidate.score else 0.0
            if score < self.detection_threshold:
                continue

            rel = candidate.location_data.relative_bounding_box
            left = max(0, int(rel.xmin * frame_w))
            top = max(0, int(rel.ymin * frame_h))
            width = min(frame_w, left + int(rel.width * frame_w)) - left
            height = min(frame_h, top + int(rel.height * frame_h)) - top
            if width > 0 and height > 0:
                detections.append(Detection(box=BoundingBox(left, top, width, height), score=score))
        return detections

    def embed(self, image: np.ndarray, box: BoundingBox) -> np.ndarray:
        crop = square_crop(cv2.cvtColor(image, cv2.COLOR_BGR2RGB), box)
        if crop.size == 0:
            raise FaceDetectionError("Face crop is empty.")

        try:
            batch = torch.from_numpy(self._to_input(crop)).unsqueeze(0).to(self.device)
            with torch.inference_mode():
                vector = f.normalize(self.embedder(batch), p=2, dim=1)
            return vector[0].cpu().numpy().astype(np.float32)
        except Exception as exc:
            raise FaceDetectionError(f"Embedding generation failed: {exc}") from exc

    def _to_input(self, crop: np.ndarray) -> np.ndarray:
        """RGB crop -> CHW float32, lighting-equalised and background-muted."""
        upscale = min(crop.shape[:2]) < INPUT_SIZE
        interpolation = cv2.INTER_CUBIC if upscale else cv2.INTER_AREA
        pixels = cv2.resize(crop, (INPUT_SIZE, INPUT_SIZE), interpolation=interpolation)

        luma, cr, cb = cv2.split(cv2.cvtColor(pixels, cv2.COLOR_RGB2YCrCb))
        pixels = cv2.cvtColor(cv2.merge([self.clahe.apply(luma), cr, cb]), cv2.COLOR_YCrCb2RGB)

        scaled = pixels.astype(np.float32) / 255.0
        backdrop = scaled.mean(axis=(0, 1), keepdims=True)
        focused = scaled * self.focus + backdrop * (1.0 - self.focus)
        normalised = (focused - IMAGENET_MEAN) / IMAGENET_STD
        return np.ascontiguousarray(normalised.transpose(2, 0, 1))
