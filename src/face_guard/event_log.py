from __future__ import annotations

import json
from collections import deque
from pathlib import Path
from typing import Deque, List, Optional

from .face_types import RecognitionEvent
from .identity_config import IdentityConfig


class EventLog:
    """Bounded, debounced history of recognition events, newest first.

    A new event is dropped when the newest stored event carries the same
    identity name and is less than ``debounce_ms`` older. The archive keeps
    ``log_capacity`` events; ``recent`` keeps the last ``recent_capacity``
    accepted events for live display.
    """

    def __init__(self, config: Optional[IdentityConfig] = None) -> None:
        self.config = config or IdentityConfig()
        self._events: Deque[RecognitionEvent] = deque(maxlen=self.config.log_capacity)
        self._recent: Deque[RecognitionEvent] = deque(
            maxlen=self.config.recent_capacity
        )
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._events)

    def append(self, event: RecognitionEvent) -> bool:
        """Insert ``event``; returns False when it was debounced."""
        if self._events:
            last = self._events[0]
            if (
                last.identity_name == event.identity_name
                and event.timestamp - last.timestamp < self.config.debounce_ms
            ):
                self.dropped += 1
                return False
        self._events.appendleft(event)
        self._recent.appendleft(event)
        return True

    @property
    def events(self) -> List[RecognitionEvent]:
        return list(self._events)

    @property
    def recent(self) -> List[RecognitionEvent]:
        return list(self._recent)

    def clear(self) -> None:
        self._events.clear()
        self._recent.clear()
        self.dropped = 0

    def export_json(self, path: Path | str) -> Path:
        """Write the archive to ``path`` (newest first)."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = [event.to_dict() for event in self._events]
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        return path
