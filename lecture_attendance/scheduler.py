from __future__ import annotations

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

import numpy as np

from .camera import FrameSource
from .config import MatchConfig
from .exceptions import (
    AttendanceError,
    CameraError,
    DimensionMismatch,
    FaceDetectionError,
    InferenceTimeout,
    ModelLoadError,
    NotFoundError,
    StorageError,
    TransportError,
)
from .face import MIN_FACE_SIZE, BoundingBox, EmbeddingExtractor, ExtractionMode, FaceModelLoader, FaceResult
from .face import face_model_loader as default_model_loader
from .logger import setup_logger
from .matching import CohortMember, Match, match
from .models import GeoPoint, PresenceMethod
from .recorder import PresenceRecorder, RecordResult
from .storage import SESSIONS, StorageGateway


class SchedulerState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    SCANNING = "scanning"
    MATCHING = "matching"
    STOPPED = "stopped"


class TickOutcome(str, Enum):
    COMPLETED = "completed"
    DROPPED = "dropped"
    DISCARDED = "discarded"
    SKIPPED = "skipped"


class ReportKind(str, Enum):
    READY = "ready"
    NO_MATCH = "no_match"
    RECORD = "record"
    ERROR = "error"
    STOPPED = "stopped"


@dataclass
class ScanReport:
    kind: ReportKind
    session_id: str
    message: str = ""
    box: Optional[BoundingBox] = None
    match: Optional[Match] = None
    result: Optional[RecordResult] = None
    error: Optional[BaseException] = None


class RecognitionScheduler:
    """Cooperative sample → extract → match → record loop for one session.

    The loop owns its camera, its lockout state (through its recorder) and a
    single-worker inference executor. At most one cycle is outstanding at a
    time; ticks that arrive while one is in flight are dropped. ``stop()``
    releases the camera before returning, and anything a cycle produces after
    that point is thrown away.
    """

    def __init__(
        self,
        session_id: str,
        gateway: StorageGateway,
        camera: FrameSource,
        config_provider: Callable[[], MatchConfig],
        model_loader: Optional[FaceModelLoader] = None,
        recorder: Optional[PresenceRecorder] = None,
        sample_interval: float = 0.3,
        inference_timeout: float = 5.0,
        io_timeout: float = 10.0,
        min_face_size: int = MIN_FACE_SIZE,
        location_provider: Optional[Callable[[], Optional[GeoPoint]]] = None,
        on_report: Optional[Callable[[ScanReport], None]] = None,
    ):
        self.session_id = session_id
        self.gateway = gateway
        self.camera = camera
        self.config_provider = config_provider
        self.model_loader = model_loader or default_model_loader
        self.recorder = recorder or PresenceRecorder(gateway, config_provider)
        self.sample_interval = sample_interval
        self.inference_timeout = inference_timeout
        self.io_timeout = io_timeout
        self.min_face_size = min_face_size
        self.location_provider = location_provider
        self.on_report = on_report
        self.logger = setup_logger(self.__class__.__name__)

        self.extractor: Optional[EmbeddingExtractor] = None
        self.cohort: List[CohortMember] = []
        self.error: Optional[BaseException] = None
        self.dropped_ticks = 0

        self._state = SchedulerState.IDLE
        self._stop_requested = False
        self._busy = False
        self._inflight: Optional[asyncio.Future] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wake: Optional[asyncio.Event] = None
        self._stop_lock = threading.Lock()
        self._camera_lock = threading.Lock()
        self._camera_held = False

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def _set_state(self, state: SchedulerState) -> None:
        if state is not self._state:
            self.logger.debug("Session %s: %s -> %s", self.session_id, self._state.value, state.value)
            self._state = state

    def _report(self, report: ScanReport) -> None:
        if report.kind is ReportKind.ERROR:
            self.logger.warning("Session %s: %s", self.session_id, report.message)
        if self.on_report is not None:
            self.on_report(report)

    async def start(self) -> bool:
        """Load the model, take the camera and load the cohort.

        Returns False (state STOPPED, ``error`` set) on any resource failure.
        There is no automatic retry.
        """
        if self._state is not SchedulerState.IDLE:
            raise AttendanceError(f"Scheduler for session {self.session_id} was already started.")

        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        self._set_state(SchedulerState.INITIALIZING)

        try:
            model = await asyncio.to_thread(self.model_loader.load)
            self.extractor = EmbeddingExtractor(model, min_face_size=self.min_face_size)
            session = await asyncio.to_thread(self.gateway.get_by_id, SESSIONS, self.session_id)
            if session is None:
                raise NotFoundError(f"Session {self.session_id} not found.")
            if self._stop_requested:
                return False
            await self._open_camera()
            if self._stop_requested:
                self._release_camera()
                return False
            self.cohort = await asyncio.to_thread(self.gateway.cohort_for_session, self.session_id)
        except (ModelLoadError, CameraError, StorageError) as exc:
            self.error = exc
            self.logger.error("Session %s failed to initialize: %s", self.session_id, exc)
            self._report(ScanReport(ReportKind.ERROR, self.session_id, message=str(exc), error=exc))
            self.stop()
            self._release_camera()
            return False

        if self._stop_requested:
            self._release_camera()
            return False

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"inference-{self.session_id}")
        self._set_state(SchedulerState.SCANNING)
        self.logger.info("Session %s scanning with %d enrolled subjects", self.session_id, len(self.cohort))
        self._report(
            ScanReport(ReportKind.READY, self.session_id, message=f"Scanning for {len(self.cohort)} subjects")
        )
        return True

    async def run(self) -> None:
        try:
            if self._state is SchedulerState.IDLE and not await self.start():
                return
            while not self._stop_requested:
                await self.tick()
                if self._stop_requested:
                    break
                await self._sleep(self.sample_interval)
        finally:
            self.stop()

    async def _sleep(self, seconds: float) -> None:
        if self._wake is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def stop(self) -> None:
        """Stop the loop and release the camera before returning."""
        with self._stop_lock:
            if self._state is SchedulerState.STOPPED:
                return
            self._stop_requested = True
            self._set_state(SchedulerState.STOPPED)

        self._wake_loop()
        self._release_camera()
        if self._executor is not None:
            self._executor.shutdown(wait=False)

        self.logger.info("Session %s stopped", self.session_id)
        self._report(ScanReport(ReportKind.STOPPED, self.session_id, message="Stopped", error=self.error))

    async def _open_camera(self) -> None:
        await asyncio.to_thread(self.camera.open)
        with self._camera_lock:
            self._camera_held = True

    def _release_camera(self) -> None:
        with self._camera_lock:
            if not self._camera_held:
                return
            self._camera_held = False
        try:
            self.camera.close()
        except CameraError as exc:
            self.logger.warning("Session %s: camera release failed: %s", self.session_id, exc)

    def _wake_loop(self) -> None:
        if self._loop is None or self._wake is None or self._loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._wake.set()
        else:
            self._loop.call_soon_threadsafe(self._wake.set)

    async def refresh_cohort(self) -> None:
        self.cohort = await self._call(self.gateway.cohort_for_session, self.session_id)

    def _inference_pending(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def tick(self) -> TickOutcome:
        if self._stop_requested or self._state in (SchedulerState.IDLE, SchedulerState.STOPPED):
            return TickOutcome.SKIPPED
        if self._busy or self._inference_pending():
            self.dropped_ticks += 1
            return TickOutcome.DROPPED

        self._busy = True
        try:
            return await self._cycle()
        except (FaceDetectionError, DimensionMismatch, InferenceTimeout, CameraError, StorageError) as exc:
            if self._stop_requested:
                return TickOutcome.DISCARDED
            self._report(ScanReport(ReportKind.ERROR, self.session_id, message=str(exc), error=exc))
            return TickOutcome.COMPLETED
        finally:
            self._busy = False
            if self._state is SchedulerState.MATCHING:
                self._set_state(SchedulerState.SCANNING)

    async def _cycle(self) -> TickOutcome:
        frame = await self._call(self.camera.read)
        if self._stop_requested:
            return TickOutcome.DISCARDED

        face = await self._infer(frame)
        del frame
        if self._stop_requested:
            return TickOutcome.DISCARDED
        if face is None:
            return TickOutcome.COMPLETED

        self._set_state(SchedulerState.MATCHING)
        config = self.config_provider()
        best = match(face.embedding, self.cohort, config.threshold)
        if best is None:
            self._report(ScanReport(ReportKind.NO_MATCH, self.session_id, message="Unknown face", box=face.box))
            return TickOutcome.COMPLETED

        location = self.location_provider() if self.location_provider is not None else None
        result = await self._call(
            self.recorder.try_record_presence,
            self.session_id,
            best.subject_id,
            best.confidence,
            PresenceMethod.FACE,
            location,
        )
        if self._stop_requested:
            return TickOutcome.DISCARDED

        label = best.external_key or best.subject_id
        self._report(
            ScanReport(
                ReportKind.RECORD,
                self.session_id,
                message=f"{result.outcome.value}: {label} {best.display_name} ({best.confidence:.0%})".strip(),
                box=face.box,
                match=best,
                result=result,
            )
        )
        return TickOutcome.COMPLETED

    async def _infer(self, frame: np.ndarray) -> Optional[FaceResult]:
        if self.extractor is None or self._executor is None:
            raise AttendanceError("Scheduler is not initialized.")

        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, self.extractor.extract, frame, ExtractionMode.LIVE)
        # Retrieve late failures of a timed-out call so they are not logged as unhandled.
        future.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._inflight = future
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=self.inference_timeout)
        except asyncio.TimeoutError as exc:
            raise InferenceTimeout(f"Face inference exceeded {self.inference_timeout:.1f}s.") from exc

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.io_timeout)
        except asyncio.TimeoutError as exc:
            name = getattr(func, "__name__", "call")
            raise TransportError(f"{name} exceeded {self.io_timeout:.1f}s.") from exc
