import asyncio
import threading

import numpy as np
import pytest

from face_guard.errors import ExtractionFailed
from face_guard.face_types import Demographics, DetectedFace
from face_guard.profile_store import ProfileStore
from face_guard.recognition_pipeline import (
    FrameRateCounter,
    PipelineState,
    RecognitionPipeline,
    normalize_box,
)
from face_guard.settings_store import ThresholdStore


class _FakeExtractor:
    def __init__(self, faces=None, ready=True, error=None, gate=None):
        self._faces = faces or []
        self._ready = ready
        self._error = error
        self._gate = gate
        self.calls = 0

    def initialize(self):
        return self._ready

    @property
    def ready(self):
        return self._ready

    def extract(self, frame, mode="strict"):
        faces = self.extract_all(frame, mode)
        return faces[0] if faces else None

    def extract_all(self, frame, mode="loose"):
        self.calls += 1
        if self._gate is not None:
            self._gate.wait(timeout=5)
        if self._error is not None:
            raise self._error
        return list(self._faces)


class _FakeVideoCapture:
    def __init__(self, frames, on_read=None):
        self._frames = frames
        self._idx = 0
        self._on_read = on_read
        self.released = False

    def isOpened(self):
        return True

    def read(self):
        if self._idx >= len(self._frames):
            return False, None
        frame = self._frames[self._idx]
        self._idx += 1
        if self._on_read is not None:
            self._on_read(self._idx)
        return True, frame

    def release(self):
        self.released = True


def _face(*vector, box=(64, 48, 128, 96), demographics=None):
    return DetectedFace(
        box=box,
        vector=np.asarray(vector, dtype=np.float64),
        score=0.9,
        demographics=demographics,
    )


def _frame():
    return np.zeros((480, 640, 3), dtype=np.uint8)


def _pipeline(tmp_path, extractor, clock=None):
    store = ProfileStore(tmp_path / "store.json")
    settings = ThresholdStore(tmp_path / "settings.json")
    kwargs = {}
    if clock is not None:
        kwargs["clock"] = clock
    pipeline = RecognitionPipeline(
        extractor=extractor, store=store, settings=settings, **kwargs
    )
    return pipeline, store, settings


def test_tick_identifies_enrolled_face_and_logs_event(tmp_path):
    extractor = _FakeExtractor(
        [_face(0.2, 0.0, demographics=Demographics(age=31, gender="female"))]
    )
    pipeline, store, _ = _pipeline(tmp_path, extractor, clock=lambda: 5000)
    alice = store.enroll("Alice", "thumb", [0.0, 0.0])

    report = asyncio.run(pipeline.tick(_frame()))

    assert report.faces == 1
    result = report.results[0]
    assert result.identified is True
    assert result.identity_id == alice.id
    assert result.identity_name == "Alice"
    assert result.confidence == 64
    assert result.box == pytest.approx((100.0, 100.0, 200.0, 200.0))
    event = report.events[0]
    assert event.identity_name == "Alice"
    assert event.is_unknown is False
    assert event.timestamp == 5000
    assert event.age == 31
    assert event.gender == "female"
    assert pipeline.event_log.events == [event]
    assert pipeline.state is PipelineState.IDLE


def test_display_name_is_resolved_after_rename(tmp_path):
    extractor = _FakeExtractor([_face(0.0, 0.0)])
    pipeline, store, _ = _pipeline(tmp_path, extractor)
    alice = store.enroll("Alice", "thumb", [0.0, 0.0])
    store.rename(alice.id, "Alicia")

    report = asyncio.run(pipeline.tick(_frame()))

    assert report.results[0].identity_name == "Alicia"


def test_weak_unknown_faces_are_not_logged(tmp_path):
    extractor = _FakeExtractor([_face(0.6, 0.0)])
    pipeline, store, _ = _pipeline(tmp_path, extractor)
    store.enroll("Alice", "thumb", [0.0, 0.0])

    report = asyncio.run(pipeline.tick(_frame()))

    assert report.results[0].identified is False
    assert report.results[0].identity_name == "Unknown"
    assert report.results[0].confidence == 40
    assert report.events == []
    assert len(pipeline.event_log) == 0


def test_confident_unknown_faces_are_logged(tmp_path):
    extractor = _FakeExtractor([_face(0.4, 0.0)])
    pipeline, store, settings = _pipeline(tmp_path, extractor)
    store.enroll("Alice", "thumb", [0.0, 0.0])
    settings.set_threshold(0.30)

    report = asyncio.run(pipeline.tick(_frame()))

    assert report.results[0].identified is False
    assert report.results[0].confidence == 60
    assert report.events[0].is_unknown is True
    assert report.events[0].identity_name == "Unknown"
    assert report.events[0].identity_id is None


def test_empty_store_yields_unknown_without_events(tmp_path):
    extractor = _FakeExtractor([_face(0.0, 0.0)])
    pipeline, _, _ = _pipeline(tmp_path, extractor)

    report = asyncio.run(pipeline.tick(_frame()))

    assert report.results[0].identified is False
    assert report.results[0].confidence == 0
    assert report.results[0].distance is None
    assert report.events == []


def test_store_and_threshold_changes_rebuild_index_on_next_tick(tmp_path):
    extractor = _FakeExtractor([_face(0.0, 0.0)])
    pipeline, store, settings = _pipeline(tmp_path, extractor)
    alice = store.enroll("Alice", "thumb", [0.0, 0.0])

    asyncio.run(pipeline.tick(_frame()))
    asyncio.run(pipeline.tick(_frame()))
    assert pipeline.index.rebuild_count == 1

    store.add_sample(alice.id, "thumb2", [1.0, 1.0])
    asyncio.run(pipeline.tick(_frame()))
    assert pipeline.index.rebuild_count == 2

    settings.set_threshold(0.6)
    asyncio.run(pipeline.tick(_frame()))
    assert pipeline.index.rebuild_count == 3


def test_identity_with_removed_samples_no_longer_matches(tmp_path):
    extractor = _FakeExtractor([_face(0.0, 0.0)])
    pipeline, store, _ = _pipeline(tmp_path, extractor)
    alice = store.enroll("Alice", "thumb", [0.0, 0.0])
    store.remove_sample(alice.id, 0)

    report = asyncio.run(pipeline.tick(_frame()))

    assert store.get(alice.id) is not None
    assert report.results[0].identified is False
    assert pipeline.index.snapshot.identity_ids == ()


def test_extraction_failure_counts_as_no_faces(tmp_path):
    extractor = _FakeExtractor(error=ExtractionFailed("decoder error"))
    pipeline, _, _ = _pipeline(tmp_path, extractor)

    report = asyncio.run(pipeline.tick(_frame()))

    assert report.extraction_failed is True
    assert report.results == []
    assert pipeline.failed_frames == 1
    assert pipeline.state is PipelineState.IDLE


def test_not_ready_extractor_is_not_called(tmp_path):
    extractor = _FakeExtractor([_face(0.0, 0.0)], ready=False)
    pipeline, _, _ = _pipeline(tmp_path, extractor)

    report = asyncio.run(pipeline.tick(_frame()))

    assert report.results == []
    assert extractor.calls == 0


def test_overlapping_tick_is_dropped_not_queued(tmp_path):
    gate = threading.Event()
    extractor = _FakeExtractor([_face(0.0, 0.0)], gate=gate)
    pipeline, store, _ = _pipeline(tmp_path, extractor)
    store.enroll("Alice", "thumb", [0.0, 0.0])

    async def _scenario():
        first = asyncio.create_task(pipeline.tick(_frame()))
        for _ in range(10):
            await asyncio.sleep(0)
            if pipeline.state is PipelineState.EXTRACTING_AND_MATCHING:
                break
        assert pipeline.state is PipelineState.EXTRACTING_AND_MATCHING
        dropped = await pipeline.tick(_frame())
        gate.set()
        return dropped, await first

    dropped, report = asyncio.run(_scenario())

    assert dropped is None
    assert report is not None and report.faces == 1
    assert extractor.calls == 1
    assert pipeline.dropped_frames == 1
    assert pipeline.state is PipelineState.IDLE


def test_repeated_detection_is_debounced_in_log(tmp_path):
    times = iter([0, 1000, 2000])
    extractor = _FakeExtractor([_face(0.0, 0.0)])
    pipeline, store, _ = _pipeline(tmp_path, extractor, clock=lambda: next(times))
    store.enroll("Alice", "thumb", [0.0, 0.0])

    for _ in range(3):
        asyncio.run(pipeline.tick(_frame()))

    assert [e.timestamp for e in pipeline.event_log.events] == [2000, 0]


def test_run_processes_or_drops_every_frame(tmp_path, monkeypatch):
    frames = [_frame() for _ in range(3)]
    capture = _FakeVideoCapture(frames)
    monkeypatch.setattr(
        "face_guard.recognition_pipeline.cv2.VideoCapture", lambda source: capture
    )
    extractor = _FakeExtractor([_face(0.0, 0.0)])
    reports = []
    pipeline, store, _ = _pipeline(tmp_path, extractor)
    pipeline.on_report = reports.append
    store.enroll("Alice", "thumb", [0.0, 0.0])

    asyncio.run(pipeline.run("clip.mp4"))

    assert capture.released is True
    assert pipeline.frames_processed >= 1
    assert pipeline.frames_processed + pipeline.dropped_frames == 3
    assert len(reports) == pipeline.frames_processed


def test_run_respects_frame_limit(tmp_path, monkeypatch):
    capture = _FakeVideoCapture([_frame() for _ in range(5)])
    monkeypatch.setattr(
        "face_guard.recognition_pipeline.cv2.VideoCapture", lambda source: capture
    )
    pipeline, _, _ = _pipeline(tmp_path, _FakeExtractor())

    asyncio.run(pipeline.run("0", limit_frames=2))

    assert pipeline.frames_processed + pipeline.dropped_frames == 2


def test_frame_rate_counter_resets_each_window():
    counter = FrameRateCounter(window_ms=1000.0)

    for t in (0, 200, 400, 600, 800):
        assert counter.tick(t) == 0
    assert counter.tick(1000) == 6
    assert counter.tick(1500) == 6
    assert counter.tick(2000) == 2


def test_normalize_box_falls_back_for_empty_frames():
    assert normalize_box((64, 48, 128, 96), (0, 0)) == pytest.approx(
        (100.0, 100.0, 200.0, 200.0)
    )


def test_matching_errors_cost_one_frame_not_the_run(tmp_path, monkeypatch):
    capture = _FakeVideoCapture([_frame() for _ in range(5)])
    monkeypatch.setattr(
        "face_guard.recognition_pipeline.cv2.VideoCapture", lambda source: capture
    )
    messages = []
    # Store holds 3-d samples while the extractor yields 2-d vectors.
    extractor = _FakeExtractor([_face(0.0, 0.0)])
    pipeline, store, _ = _pipeline(tmp_path, extractor)
    pipeline.verbose = True
    pipeline.log_fn = messages.append
    store.enroll("Alice", "thumb", [0.0, 0.0, 0.0])

    asyncio.run(pipeline.run("clip.mp4"))

    assert capture.released is True
    assert pipeline.frames_processed >= 1
    assert pipeline.frames_processed + pipeline.dropped_frames == 5
    assert pipeline.failed_frames == pipeline.frames_processed
    assert len(pipeline.event_log) == 0
    assert pipeline.state is PipelineState.IDLE
    assert any("ValueError" in m for m in messages)


def test_tick_reports_matching_error_as_failed_frame(tmp_path):
    extractor = _FakeExtractor([_face(0.0, 0.0)])
    pipeline, store, _ = _pipeline(tmp_path, extractor)
    store.enroll("Alice", "thumb", [0.0, 0.0, 0.0])

    report = asyncio.run(pipeline.tick(_frame()))

    assert report.extraction_failed is True
    assert report.results == []
    assert pipeline.failed_frames == 1


def test_stop_ends_run_and_awaits_inflight_tick(tmp_path, monkeypatch):
    holder = {}

    def _stop_after_second_frame(count):
        if count == 2:
            holder["pipeline"].stop()

    capture = _FakeVideoCapture(
        [_frame() for _ in range(6)], on_read=_stop_after_second_frame
    )
    monkeypatch.setattr(
        "face_guard.recognition_pipeline.cv2.VideoCapture", lambda source: capture
    )
    reports = []
    pipeline, store, _ = _pipeline(tmp_path, _FakeExtractor([_face(0.0, 0.0)]))
    pipeline.on_report = reports.append
    holder["pipeline"] = pipeline
    store.enroll("Alice", "thumb", [0.0, 0.0])

    asyncio.run(pipeline.run("clip.mp4"))

    assert capture.released is True
    assert capture._idx == 2
    assert pipeline.frames_processed + pipeline.dropped_frames == 2
    assert len(reports) == pipeline.frames_processed >= 1
    assert pipeline.state is PipelineState.IDLE


def test_frames_without_faces_still_refresh_the_index(tmp_path):
    pipeline, store, settings = _pipeline(tmp_path, _FakeExtractor())
    store.enroll("Alice", "thumb", [0.0, 0.0])

    asyncio.run(pipeline.tick(_frame()))
    settings.set_threshold(0.7)
    asyncio.run(pipeline.tick(_frame()))

    assert pipeline.index.rebuild_count == 2
    assert pipeline.index.snapshot.threshold == 0.7
