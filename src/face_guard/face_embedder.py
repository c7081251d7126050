from __future__ import annotations

import concurrent.futures
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Protocol, Sequence

import numpy as np

from .errors import ExtractionFailed, InitializationFailed
from .face_types import Demographics, DetectedFace, ExtractionMode


class FaceExtractor(Protocol):
    def initialize(self) -> bool: ...

    @property
    def ready(self) -> bool: ...

    def extract(
        self, frame: np.ndarray, mode: ExtractionMode = "strict"
    ) -> Optional[DetectedFace]: ...

    def extract_all(
        self, frame: np.ndarray, mode: ExtractionMode = "loose"
    ) -> List[DetectedFace]: ...


class ExtractorState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass
class FaceEmbedderConfig:
    # Model packs tried in order until one loads.
    model_names: Sequence[str] = ("buffalo_l", "buffalo_s")
    providers: Sequence[str] = ("CPUExecutionProvider",)
    det_size: int = 640
    init_timeout_sec: float = 60.0
    strict_min_score: float = 0.85
    loose_min_score: float = 0.5
    enable_demographics: bool = True


def _default_app_factory(name: str, providers: Sequence[str], modules: Sequence[str]):
    try:
        from insightface.app import FaceAnalysis
    except ImportError as exc:
        raise ImportError(
            "insightface is required. Install with: pip install insightface onnxruntime"
        ) from exc
    return FaceAnalysis(
        name=name, providers=list(providers), allowed_modules=list(modules)
    )


class InsightFaceExtractor:
    """Face detection + embedding backed by an InsightFace model pack.

    Loading is an explicit state machine. ``initialize`` and ``retry`` are
    idempotent: once READY they return immediately, after FAILED they try the
    configured model packs again. Demographics (age/gender) load after the
    critical models and may fail on their own.
    """

    def __init__(
        self,
        config: Optional[FaceEmbedderConfig] = None,
        app_factory: Optional[Callable[..., object]] = None,
        verbose: bool = False,
        log_fn: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.config = config or FaceEmbedderConfig()
        self._app_factory = app_factory or _default_app_factory
        self.verbose = verbose
        self.log_fn = log_fn
        self.state = ExtractorState.UNINITIALIZED
        self.model_name: Optional[str] = None
        self._app = None
        self._demographics = None

    def _emit(self, message: str) -> None:
        if not self.verbose:
            return
        if self.log_fn is not None:
            self.log_fn(message)
            return
        print(message)

    @property
    def ready(self) -> bool:
        return self.state is ExtractorState.READY

    @property
    def demographics_ready(self) -> bool:
        return self._demographics is not None

    def _load(self, name: str, modules: Sequence[str]):
        app = self._app_factory(name, self.config.providers, modules)
        # ctx_id=-1 uses CPU; det_size controls the detector input size.
        app.prepare(ctx_id=-1, det_size=(self.config.det_size, self.config.det_size))
        return app

    def _load_with_timeout(self, name: str, modules: Sequence[str]):
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        try:
            future = executor.submit(self._load, name, modules)
            return future.result(timeout=self.config.init_timeout_sec)
        finally:
            # Do not wait on a hung load; the worker is abandoned.
            executor.shutdown(wait=False)

    def initialize(self) -> bool:
        if self.state is ExtractorState.READY:
            return True
        if self.state is ExtractorState.LOADING:
            return False
        self.state = ExtractorState.LOADING
        for name in self.config.model_names:
            self._emit(f"loading face models from {name}")
            try:
                self._app = self._load_with_timeout(name, ("detection", "recognition"))
            except concurrent.futures.TimeoutError:
                self._emit(
                    f"failed to load {name}: timeout after {self.config.init_timeout_sec}s"
                )
                continue
            except Exception as exc:  # any backend failure means try the next pack
                self._emit(f"failed to load {name}: {exc}")
                continue
            self.model_name = name
            self.state = ExtractorState.READY
            self._emit(f"face models ready ({name})")
            self._load_demographics(name)
            return True
        self._emit("all model sources failed")
        self.state = ExtractorState.FAILED
        return False

    def retry(self) -> bool:
        return self.initialize()

    def require_ready(self) -> None:
        if not self.initialize():
            raise InitializationFailed(
                f"Unable to load any of {list(self.config.model_names)}"
            )

    def _load_demographics(self, name: str) -> None:
        if not self.config.enable_demographics:
            return
        try:
            self._demographics = self._load_with_timeout(
                name, ("detection", "genderage")
            )
        except Exception as exc:  # demographics are optional
            self._demographics = None
            self._emit(f"demographics skipped: {exc}")
            return
        self._emit("demographics model ready")

    def _min_score(self, mode: ExtractionMode) -> float:
        if mode == "strict":
            return self.config.strict_min_score
        return self.config.loose_min_score

    def _demographics_for(self, frame: np.ndarray, face) -> Optional[Demographics]:
        if self._demographics is None:
            return None
        model = getattr(self._demographics, "models", {}).get("genderage")
        if model is None:
            return None
        try:
            gender, age = model.get(frame, face)
        except Exception:  # demographics never block a frame
            return None
        return Demographics(
            age=int(round(float(age))),
            gender="male" if int(gender) == 1 else "female",
        )

    def extract_all(
        self, frame: np.ndarray, mode: ExtractionMode = "loose"
    ) -> List[DetectedFace]:
        if not self.ready:
            return []
        try:
            faces = self._app.get(frame)
        except Exception as exc:  # surfaced as a per-frame failure
            raise ExtractionFailed(str(exc)) from exc
        min_score = self._min_score(mode)
        detected: List[DetectedFace] = []
        for face in faces:
            score = float(getattr(face, "det_score", 0.0))
            if score < min_score:
                continue
            embedding = getattr(face, "normed_embedding", None)
            if embedding is None:
                embedding = getattr(face, "embedding", None)
            if embedding is None:
                continue
            x1, y1, x2, y2 = [int(v) for v in np.asarray(face.bbox).tolist()]
            detected.append(
                DetectedFace(
                    box=(x1, y1, x2, y2),
                    vector=np.asarray(embedding, dtype=np.float32),
                    score=score,
                    demographics=self._demographics_for(frame, face),
                )
            )
        return detected

    def extract(
        self, frame: np.ndarray, mode: ExtractionMode = "strict"
    ) -> Optional[DetectedFace]:
        faces = self.extract_all(frame, mode)
        if not faces:
            return None
        # The main face is the most confident one.
        return max(faces, key=lambda f: f.score)
