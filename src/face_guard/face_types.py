from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional, Tuple

import numpy as np

ExtractionMode = Literal["strict", "loose"]

UNKNOWN_NAME = "Unknown"


@dataclass(frozen=True)
class Sample:
    # Thumbnail payload for display only (JPEG data URL); never used for matching.
    thumbnail: str
    # Reference feature vector of dimension D.
    vector: Tuple[float, ...]

    def as_array(self) -> np.ndarray:
        return np.asarray(self.vector, dtype=np.float64)

    def to_dict(self) -> Dict[str, object]:
        return {"thumbnail": self.thumbnail, "vector": list(self.vector)}

    @classmethod
    def from_dict(cls, payload: Dict[str, object]) -> "Sample":
        return cls(
            thumbnail=str(payload.get("thumbnail", "")),
            vector=tuple(float(v) for v in payload["vector"]),
        )


@dataclass(frozen=True)
class Identity:
    # Opaque unique token, immutable for the store's lifetime.
    id: str
    # Display name, only used at the presentation boundary.
    name: str
    # Creation time in epoch milliseconds.
    created_at: int
    samples: Tuple[Sample, ...] = ()

    @property
    def sample_count(self) -> int:
        return len(self.samples)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "createdAt": self.created_at,
            "samples": [sample.to_dict() for sample in self.samples],
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, object]) -> "Identity":
        return cls(
            id=str(payload["id"]),
            name=str(payload["name"]),
            created_at=int(payload.get("createdAt", 0)),
            samples=tuple(Sample.from_dict(s) for s in payload.get("samples", [])),
        )


@dataclass(frozen=True)
class Demographics:
    age: Optional[int] = None
    gender: Optional[str] = None
    # Dominant expression label when the sub-model provides one.
    expression: Optional[str] = None


@dataclass(frozen=True)
class DetectedFace:
    # (x1, y1, x2, y2) bounding box in frame pixel coordinates.
    box: Tuple[int, int, int, int]
    # Feature vector produced by the extractor.
    vector: np.ndarray
    # Detector confidence.
    score: float = 1.0
    demographics: Optional[Demographics] = None


@dataclass(frozen=True)
class DetectionResult:
    identified: bool
    # Matched identity id, None for unknown faces.
    identity_id: Optional[str]
    # Display name resolved from the id after matching.
    identity_name: str
    # Integer confidence in [0, 100].
    confidence: int
    # Euclidean distance to the nearest reference vector (None with an empty index).
    distance: Optional[float]
    # (x1, y1, x2, y2) box scaled into the canonical coordinate space.
    box: Tuple[float, float, float, float]
    demographics: Optional[Demographics] = None


@dataclass(frozen=True)
class RecognitionEvent:
    id: str
    # Epoch milliseconds.
    timestamp: int
    identity_name: str
    confidence: int
    is_unknown: bool
    identity_id: Optional[str] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    expression: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "identityName": self.identity_name,
            "identityId": self.identity_id,
            "confidence": self.confidence,
            "isUnknown": self.is_unknown,
            "age": self.age,
            "gender": self.gender,
            "expression": self.expression,
        }


@dataclass
class FrameReport:
    """Outcome of one scheduling tick."""

    results: List[DetectionResult] = field(default_factory=list)
    events: List[RecognitionEvent] = field(default_factory=list)
    faces: int = 0
    extraction_failed: bool = False
