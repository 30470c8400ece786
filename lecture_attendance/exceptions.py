class AttendanceError(Exception):
    """Base exception for the attendance system."""


class ConfigError(AttendanceError):
    """Raised when runtime configuration values are invalid."""


class FaceDetectionError(AttendanceError):
    """Raised when an image cannot yield a usable face embedding."""


class NoFaceDetected(FaceDetectionError):
    """Raised when enrollment finds no face in the image."""


class MultipleFacesDetected(FaceDetectionError):
    """Raised when enrollment finds more than one face in the image."""


class FaceTooSmall(FaceDetectionError):
    """Raised when the detected face is below the minimum box size."""


class DimensionMismatch(AttendanceError):
    """Raised when two embeddings of different length are compared."""


class CameraError(AttendanceError):
    """Raised when webcam access fails."""


class ModelLoadError(AttendanceError):
    """Raised when the face detection or embedding model cannot be loaded."""


class InferenceTimeout(AttendanceError):
    """Raised when a model call does not return within the operational timeout."""


class StorageError(AttendanceError):
    """Raised when storage operations fail."""


class NotFoundError(StorageError):
    """Raised when a record does not exist."""


class ConflictError(StorageError):
    """Raised when a write violates a unique key."""


class TransportError(StorageError):
    """Raised when the remote backend cannot be reached or fails."""


class PresenceRejected(StorageError):
    """Raised when the recording endpoint refuses an event for a policy reason."""

    def __init__(self, reason: str, message: str = ""):
        super().__init__(message or reason)
        self.reason = reason
