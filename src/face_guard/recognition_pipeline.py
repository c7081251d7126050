from __future__ import annotations

import asyncio
import time
import uuid
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .errors import ExtractionFailed
from .event_log import EventLog
from .face_embedder import FaceExtractor
from .face_types import (
    UNKNOWN_NAME,
    DetectedFace,
    DetectionResult,
    FrameReport,
    RecognitionEvent,
)
from .identity_config import IdentityConfig
from .matcher_index import MatcherIndex, names_by_id
from .profile_store import ProfileStore
from .settings_store import ThresholdStore


class PipelineState(str, Enum):
    IDLE = "idle"
    EXTRACTING_AND_MATCHING = "extracting_and_matching"


class FrameRateCounter:
    """Counts frames and publishes the count once per window."""

    def __init__(self, window_ms: float = 1000.0) -> None:
        self.window_ms = window_ms
        self.fps = 0
        self._count = 0
        self._window_start: Optional[float] = None

    def tick(self, now_ms: float) -> int:
        if self._window_start is None:
            self._window_start = now_ms
        self._count += 1
        if now_ms - self._window_start >= self.window_ms:
            self.fps = self._count
            self._count = 0
            self._window_start = now_ms
        return self.fps


def normalize_box(
    box: Tuple[int, int, int, int],
    frame_shape: Sequence[int],
    scale: float = 1000.0,
    fallback_size: Tuple[int, int] = (640, 480),
) -> Tuple[float, float, float, float]:
    """Scale an (x1, y1, x2, y2) pixel box into a 0..scale space on both axes."""
    height = int(frame_shape[0]) if len(frame_shape) > 0 else 0
    width = int(frame_shape[1]) if len(frame_shape) > 1 else 0
    if width <= 0 or height <= 0:
        width, height = fallback_size
    sx = scale / width
    sy = scale / height
    x1, y1, x2, y2 = box
    return (x1 * sx, y1 * sy, x2 * sx, y2 * sy)


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class RecognitionPipeline:
    """Single-flight detection and matching loop over a video stream.

    Each tick runs extraction for one frame and resolves every detected face
    against the matcher index. While a tick is in flight further frames are
    dropped, never queued. Matcher and index state belong to this instance.
    """

    def __init__(
        self,
        extractor: FaceExtractor,
        store: ProfileStore,
        settings: ThresholdStore,
        event_log: Optional[EventLog] = None,
        index: Optional[MatcherIndex] = None,
        config: Optional[IdentityConfig] = None,
        clock: Callable[[], int] = _wall_clock_ms,
        on_report: Optional[Callable[[FrameReport], None]] = None,
        verbose: bool = False,
        log_fn: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.extractor = extractor
        self.store = store
        self.settings = settings
        self.config = config or IdentityConfig()
        self.event_log = event_log if event_log is not None else EventLog(self.config)
        self.index = index if index is not None else MatcherIndex()
        self.clock = clock
        self.on_report = on_report
        self.verbose = verbose
        self.log_fn = log_fn
        self.fps_counter = FrameRateCounter(self.config.fps_window_ms)
        self.frames_processed = 0
        self.dropped_frames = 0
        self.failed_frames = 0
        self._state = PipelineState.IDLE
        self._stopping = False

    def _emit(self, message: str) -> None:
        if not self.verbose:
            return
        if self.log_fn is not None:
            self.log_fn(message)
            return
        print(message)

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def ready(self) -> bool:
        return self.extractor.ready

    @property
    def fps(self) -> int:
        return self.fps_counter.fps

    def match_faces(
        self, faces: Sequence[DetectedFace], frame_shape: Sequence[int]
    ) -> List[DetectionResult]:
        identities = self.store.snapshot()
        snapshot = self.index.ensure_fresh(identities, self.settings.threshold)
        if not faces:
            return []
        names = names_by_id(identities)
        results: List[DetectionResult] = []
        for face in faces:
            decision = self.index.decide(face.vector, snapshot)
            # Names are looked up only now; matching itself is keyed by id.
            if decision.identified and decision.identity_id is not None:
                name = names.get(decision.identity_id, UNKNOWN_NAME)
                identity_id: Optional[str] = decision.identity_id
            else:
                name = UNKNOWN_NAME
                identity_id = None
            results.append(
                DetectionResult(
                    identified=decision.identified,
                    identity_id=identity_id,
                    identity_name=name,
                    confidence=decision.confidence,
                    distance=decision.distance,
                    box=normalize_box(
                        face.box,
                        frame_shape,
                        self.config.box_scale,
                        self.config.fallback_frame_size,
                    ),
                    demographics=face.demographics,
                )
            )
        return results

    def _record_events(self, results: Sequence[DetectionResult]) -> List[RecognitionEvent]:
        recorded: List[RecognitionEvent] = []
        for result in results:
            # Faces that are neither identified nor clearly seen are noise.
            if not (
                result.identified
                or result.confidence > self.config.event_confidence_min
            ):
                continue
            demographics = result.demographics
            event = RecognitionEvent(
                id=str(uuid.uuid4()),
                timestamp=int(self.clock()),
                identity_name=result.identity_name,
                confidence=result.confidence,
                is_unknown=not result.identified,
                identity_id=result.identity_id,
                age=demographics.age if demographics else None,
                gender=demographics.gender if demographics else None,
                expression=demographics.expression if demographics else None,
            )
            if self.event_log.append(event):
                recorded.append(event)
        return recorded

    async def _extract(self, frame: np.ndarray) -> Tuple[List[DetectedFace], bool]:
        try:
            faces = await asyncio.to_thread(self.extractor.extract_all, frame, "loose")
        except ExtractionFailed as exc:
            self.failed_frames += 1
            self._emit(f"frame dropped: extraction failed ({exc})")
            return [], True
        return list(faces), False

    async def tick(self, frame: np.ndarray) -> Optional[FrameReport]:
        """Run one extraction/match cycle; returns None when the frame is dropped."""
        if self._state is PipelineState.EXTRACTING_AND_MATCHING:
            self.dropped_frames += 1
            return None
        self._state = PipelineState.EXTRACTING_AND_MATCHING
        try:
            if not self.ready:
                return FrameReport()
            try:
                faces, failed = await self._extract(frame)
                results = self.match_faces(faces, frame.shape)
                events = self._record_events(results)
            except Exception as exc:
                # A bad frame or a store/extractor mismatch costs one frame only.
                self.failed_frames += 1
                self._emit(f"frame dropped: {type(exc).__name__}: {exc}")
                faces, failed, results, events = [], True, [], []
            self.frames_processed += 1
            report = FrameReport(
                results=results,
                events=events,
                faces=len(faces),
                extraction_failed=failed,
            )
        finally:
            self._state = PipelineState.IDLE
        self._emit(
            f"frame {self.frames_processed:06d} -> faces={report.faces} fps={self.fps}"
        )
        for result in report.results:
            distance = "n/a" if result.distance is None else f"{result.distance:.3f}"
            self._emit(
                f"  name={result.identity_name} identified={result.identified} "
                f"confidence={result.confidence} distance={distance}"
            )
        if self.on_report is not None:
            self.on_report(report)
        return report

    def _open_video_source(self, source: str) -> cv2.VideoCapture:
        target = int(source) if source.isdigit() else source
        cap = cv2.VideoCapture(target)
        if not cap.isOpened():
            raise RuntimeError(f"Unable to open video source {source}")
        return cap

    def stop(self) -> None:
        self._stopping = True

    async def run(self, source: str, limit_frames: Optional[int] = None) -> None:
        """Drive ticks from a video file or camera until stopped or exhausted."""
        cap = self._open_video_source(source)
        self._stopping = False
        inflight: Optional[asyncio.Task] = None
        frame_idx = 0
        try:
            while not self._stopping:
                ok, frame = cap.read()
                if not ok:
                    break
                self.fps_counter.tick(_monotonic_ms())
                if inflight is not None and inflight.done():
                    inflight.result()
                    inflight = None
                if inflight is None:
                    inflight = asyncio.create_task(self.tick(frame))
                else:
                    self.dropped_frames += 1
                frame_idx += 1
                if limit_frames and frame_idx >= limit_frames:
                    break
                await asyncio.sleep(0)
        finally:
            cap.release()
        if inflight is not None:
            await inflight
