from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class IdentityConfig:
    # Acceptance threshold (maximum Euclidean distance for a positive match)
    threshold_default: float = 0.55
    threshold_min: float = 0.30
    threshold_max: float = 0.80

    # Advisory sample consistency gate
    consistency_tolerance: float = 0.65

    # Event log
    debounce_ms: int = 1500
    log_capacity: int = 200
    recent_capacity: int = 15
    event_confidence_min: int = 50  # unknown faces are logged only above this

    # Canonical box coordinate space (both axes)
    box_scale: float = 1000.0
    fallback_frame_size: Tuple[int, int] = (640, 480)

    # Frame rate telemetry window
    fps_window_ms: float = 1000.0


def clamp_threshold(value: float, config: IdentityConfig | None = None) -> float:
    config = config or IdentityConfig()
    return float(min(config.threshold_max, max(config.threshold_min, float(value))))
