from __future__ import annotations

import json
import warnings
from pathlib import Path
from typing import Optional

from .errors import PersistenceWarning
from .identity_config import IdentityConfig, clamp_threshold


class ThresholdStore:
    """Persists the acceptance threshold across sessions."""

    def __init__(
        self,
        path: Path | str = "profiles/settings.json",
        config: Optional[IdentityConfig] = None,
    ) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.config = config or IdentityConfig()
        self._threshold = self.config.threshold_default
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        raw = self.path.read_text(encoding="utf-8").strip()
        if not raw:
            return
        try:
            value = float(json.loads(raw)["threshold"])
        except (ValueError, KeyError, TypeError):
            # Unreadable settings fall back to the default.
            return
        self._threshold = clamp_threshold(value, self.config)

    @property
    def threshold(self) -> float:
        return self._threshold

    def set_threshold(self, value: float) -> float:
        self._threshold = clamp_threshold(value, self.config)
        self.save()
        return self._threshold

    def save(self) -> bool:
        try:
            self.path.write_text(
                json.dumps({"threshold": self._threshold}, indent=2), encoding="utf-8"
            )
        except OSError as exc:
            warnings.warn(
                f"Unable to persist threshold to {self.path}: {exc}",
                PersistenceWarning,
                stacklevel=3,
            )
            return False
        return True
