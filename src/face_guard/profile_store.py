from __future__ import annotations

import json
import time
import uuid
import warnings
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .errors import IndexOutOfRange, NotFound, PersistenceWarning
from .face_types import Identity, Sample
from .identity_config import IdentityConfig


def _now_ms() -> int:
    return int(time.time() * 1000)


def _as_vector(vector: Sequence[float] | np.ndarray) -> Tuple[float, ...]:
    return tuple(np.asarray(vector, dtype=np.float64).ravel().tolist())


class ProfileStore:
    """JSON-backed store of enrolled identities and their reference samples.

    Every successful mutation writes the whole store back to ``path``. A failed
    write is reported as a ``PersistenceWarning`` and never undoes the
    in-memory change.
    """

    def __init__(
        self,
        path: Path | str = "profiles/face_profiles.json",
        config: Optional[IdentityConfig] = None,
    ) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.config = config or IdentityConfig()
        self.last_save_error: Optional[str] = None
        self._identities: Dict[str, Identity] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists() or not self.path.read_text(encoding="utf-8").strip():
            self._identities = {}
            return
        data = json.loads(self.path.read_text(encoding="utf-8"))
        self._identities = {}
        for entry in data:
            identity = Identity.from_dict(entry)
            self._identities[identity.id] = identity

    def save(self) -> bool:
        payload = [identity.to_dict() for identity in self._identities.values()]
        try:
            self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            self.last_save_error = str(exc)
            warnings.warn(
                f"Unable to persist profiles to {self.path}: {exc}",
                PersistenceWarning,
                stacklevel=3,
            )
            return False
        self.last_save_error = None
        return True

    def snapshot(self) -> Tuple[Identity, ...]:
        return tuple(self._identities.values())

    def list_identities(self) -> List[Identity]:
        return list(self._identities.values())

    def get(self, identity_id: str) -> Optional[Identity]:
        return self._identities.get(identity_id)

    def has_identity(self, identity_id: str) -> bool:
        return identity_id in self._identities

    def _require(self, identity_id: str) -> Identity:
        identity = self._identities.get(identity_id)
        if identity is None:
            raise NotFound(identity_id)
        return identity

    def dimension(self) -> Optional[int]:
        for identity in self._identities.values():
            for sample in identity.samples:
                return len(sample.vector)
        return None

    def _check_dimension(self, vector: Sequence[float]) -> None:
        expected = self.dimension()
        if expected is not None and len(vector) != expected:
            raise ValueError(
                f"Embedding shape mismatch: expected {expected}, got {len(vector)}"
            )

    def enroll(
        self,
        name: str,
        thumbnail: str,
        vector: Optional[Sequence[float] | np.ndarray] = None,
    ) -> Identity:
        samples: Tuple[Sample, ...] = ()
        if vector is not None:
            values = _as_vector(vector)
            self._check_dimension(values)
            samples = (Sample(thumbnail=thumbnail, vector=values),)
        identity = Identity(
            id=str(uuid.uuid4()),
            name=name,
            created_at=_now_ms(),
            samples=samples,
        )
        self._identities[identity.id] = identity
        self.save()
        return identity

    def delete(self, identity_id: str) -> bool:
        if identity_id not in self._identities:
            return False
        del self._identities[identity_id]
        self.save()
        return True

    def rename(self, identity_id: str, name: str) -> Identity:
        identity = replace(self._require(identity_id), name=name)
        self._identities[identity_id] = identity
        self.save()
        return identity

    def add_sample(
        self,
        identity_id: str,
        thumbnail: str,
        vector: Sequence[float] | np.ndarray,
    ) -> Identity:
        identity = self._require(identity_id)
        values = _as_vector(vector)
        self._check_dimension(values)
        sample = Sample(thumbnail=thumbnail, vector=values)
        identity = replace(identity, samples=identity.samples + (sample,))
        self._identities[identity_id] = identity
        self.save()
        return identity

    def remove_sample(self, identity_id: str, index: int) -> Identity:
        identity = self._require(identity_id)
        # Negative positions are rejected rather than counted from the end.
        if index < 0 or index >= len(identity.samples):
            raise IndexOutOfRange(identity_id, index, len(identity.samples))
        samples = identity.samples[:index] + identity.samples[index + 1 :]
        identity = replace(identity, samples=samples)
        self._identities[identity_id] = identity
        self.save()
        return identity

    def sample_consistency(
        self,
        identity_id: str,
        candidate: Sequence[float] | np.ndarray,
        tolerance: Optional[float] = None,
    ) -> bool:
        """Advisory check that ``candidate`` lies near an existing sample.

        Returns True when the nearest existing sample is closer than
        ``tolerance``. An identity without samples has nothing to disagree
        with and is always consistent. Nothing is mutated.
        """
        identity = self._require(identity_id)
        if tolerance is None:
            tolerance = self.config.consistency_tolerance
        if not identity.samples:
            return True
        query = np.asarray(candidate, dtype=np.float64).ravel()
        stacked = np.stack([sample.as_array() for sample in identity.samples], axis=0)
        if stacked.shape[1] != query.shape[0]:
            raise ValueError("Embedding shape mismatch")
        min_distance = float(np.min(np.linalg.norm(stacked - query, axis=1)))
        return min_distance < tolerance
