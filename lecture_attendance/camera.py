from __future__ import annotations

import os
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import cv2
import numpy as np

from .exceptions import CameraError


class FrameSource(Protocol):
    def open(self) -> None:
        ...

    def read(self) -> np.ndarray:
        ...

    def close(self) -> None:
        ...


_registry_lock = threading.Lock()
_device_locks: Dict[int, threading.Lock] = {}


def _device_lock(camera_index: int) -> threading.Lock:
    with _registry_lock:
        return _device_locks.setdefault(camera_index, threading.Lock())


def _preferred_backend_order() -> List[str]:
    raw = os.getenv("ATTENDANCE_CAMERA_BACKEND_ORDER", "").strip()
    if not raw:
        # Windows laptop webcams are generally more stable on DirectShow.
        if os.name == "nt":
            return ["DirectShow", "Media Foundation", "Auto"]
        return ["Auto", "V4L2"]
    mapping = {
        "auto": "Auto",
        "any": "Auto",
        "v4l2": "V4L2",
        "dshow": "DirectShow",
        "directshow": "DirectShow",
        "msmf": "Media Foundation",
    }
    result: List[str] = []
    for item in raw.split(","):
        name = mapping.get(item.strip().lower())
        if name and name not in result:
            result.append(name)
    return result or ["Auto"]


def capture_backends() -> List[Tuple[str, Optional[int]]]:
    backend_map: Dict[str, Optional[int]] = {
        "Auto": getattr(cv2, "CAP_ANY", None),
        "V4L2": getattr(cv2, "CAP_V4L2", None),
        "DirectShow": getattr(cv2, "CAP_DSHOW", None),
        "Media Foundation": getattr(cv2, "CAP_MSMF", None),
    }
    candidates: List[Tuple[str, Optional[int]]] = []
    seen: set = set()
    for name in _preferred_backend_order():
        backend = backend_map.get(name)
        if backend in seen:
            continue
        seen.add(backend)
        candidates.append((name, backend))
    return candidates


def open_camera_capture(camera_index: int) -> Tuple[Any, str]:
    attempted: List[str] = []

    for backend_name, backend in capture_backends():
        attempted.append(backend_name)
        if backend is None:
            cap = cv2.VideoCapture(camera_index)
        else:
            cap = cv2.VideoCapture(camera_index, backend)

        if cap.isOpened():
            # Some backends report opened=True but never deliver frames.
            for _ in range(6):
                ok, frame = cap.read()
                if ok and frame is not None:
                    return cap, backend_name
                time.sleep(0.03)
        cap.release()

    tried = ", ".join(attempted) if attempted else "default backend"
    raise CameraError(f"Unable to open webcam index {camera_index}. Tried backends: {tried}.")


class CameraStream:
    """Exclusive handle on one webcam.

    Only one stream per device index may be open in the process; a second
    ``open()`` waits up to ``acquire_timeout`` for the first to close. ``close()``
    blocks until any in-progress ``read()`` has returned, then frees the device.
    """

    def __init__(
        self,
        camera_index: int = 0,
        frame_width: int = 1280,
        frame_height: int = 720,
        acquire_timeout: float = 5.0,
        capture_opener: Callable[[int], Tuple[Any, str]] = open_camera_capture,
    ):
        self.camera_index = camera_index
        self.frame_width = frame_width
        self.frame_height = frame_height
        self.acquire_timeout = acquire_timeout
        self.capture_opener = capture_opener
        self.cap = None
        self.backend_name: Optional[str] = None
        self._io_lock = threading.Lock()
        self._device_held = False

    def __enter__(self) -> "CameraStream":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self.cap is not None

    def open(self) -> None:
        if self.cap is not None:
            return

        device_lock = _device_lock(self.camera_index)
        if not device_lock.acquire(timeout=self.acquire_timeout):
            raise CameraError(f"Webcam index {self.camera_index} is in use by another session.")
        self._device_held = True

        try:
            cap, backend_name = self.capture_opener(self.camera_index)
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.frame_width)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.frame_height)
        except CameraError:
            self._release_device()
            raise
        except Exception as exc:
            self._release_device()
            raise CameraError(f"Unable to open webcam index {self.camera_index}: {exc}") from exc

        with self._io_lock:
            self.cap = cap
            self.backend_name = backend_name

    def read(self) -> np.ndarray:
        with self._io_lock:
            if self.cap is None:
                raise CameraError("Webcam stream is not initialized.")
            success, frame = self.cap.read()
        if not success or frame is None:
            raise CameraError("Failed to read frame from webcam.")
        return frame

    def close(self) -> None:
        with self._io_lock:
            if self.cap is not None:
                self.cap.release()
                self.cap = None
        self._release_device()

    def _release_device(self) -> None:
        if self._device_held:
            self._device_held = False
            _device_lock(self.camera_index).release()
