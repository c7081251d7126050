from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Sequence, Tuple

import numpy as np

from .face_types import Identity


@dataclass(frozen=True)
class MatchResult:
    identity_id: str
    distance: float


@dataclass(frozen=True)
class MatchDecision:
    # Nearest identity id; None only when the index is empty.
    identity_id: Optional[str]
    distance: Optional[float]
    identified: bool
    confidence: int


@dataclass(frozen=True)
class MatcherSnapshot:
    snapshot_key: str
    threshold: float
    # Indexed identity ids in snapshot order.
    identity_ids: Tuple[str, ...]
    # (N, D) reference vectors, grouped by identity in snapshot order.
    vectors: np.ndarray
    # (N,) position into identity_ids for each row of vectors.
    owners: np.ndarray

    @property
    def is_empty(self) -> bool:
        return len(self.identity_ids) == 0


def snapshot_key(identities: Iterable[Identity], threshold: float) -> str:
    parts = [f"{identity.id}:{identity.sample_count}" for identity in identities]
    return "|".join(parts) + f"_T{threshold}"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def score_confidence(distance: float, threshold: float) -> Tuple[bool, int]:
    """Map a nearest-neighbor distance to (identified, confidence 0..100).

    Inside the threshold the confidence is scaled by the threshold; outside it
    falls back to ``1 - distance`` and carries no decision.
    """
    if distance < threshold:
        return True, _round_half_up(max(0.0, 1.0 - distance / threshold) * 100)
    return False, _round_half_up(max(0.0, 1.0 - min(1.0, distance)) * 100)


def _build_snapshot(
    identities: Sequence[Identity], threshold: float, key: str
) -> MatcherSnapshot:
    identity_ids = []
    rows = []
    owners = []
    for identity in identities:
        # Identities without samples can never match and stay out of the index.
        if not identity.samples:
            continue
        position = len(identity_ids)
        identity_ids.append(identity.id)
        for sample in identity.samples:
            rows.append(sample.as_array())
            owners.append(position)
    if rows:
        vectors = np.stack(rows, axis=0)
    else:
        vectors = np.zeros((0, 0), dtype=np.float64)
    return MatcherSnapshot(
        snapshot_key=key,
        threshold=threshold,
        identity_ids=tuple(identity_ids),
        vectors=vectors,
        owners=np.asarray(owners, dtype=np.int64),
    )


class MatcherIndex:
    """Cached brute-force nearest-neighbor index over a ProfileStore snapshot.

    The cache is keyed by ``snapshot_key``; any change to the set of
    identities, their sample counts, or the threshold triggers a rebuild on
    the next ``ensure_fresh`` call. Only the latest snapshot is kept.
    """

    def __init__(self) -> None:
        self._snapshot: Optional[MatcherSnapshot] = None
        self.rebuild_count = 0

    @property
    def snapshot(self) -> Optional[MatcherSnapshot]:
        return self._snapshot

    def invalidate(self) -> None:
        self._snapshot = None

    def ensure_fresh(
        self, identities: Sequence[Identity], threshold: float
    ) -> MatcherSnapshot:
        key = snapshot_key(identities, threshold)
        if self._snapshot is not None and self._snapshot.snapshot_key == key:
            return self._snapshot
        self._snapshot = _build_snapshot(identities, threshold, key)
        self.rebuild_count += 1
        return self._snapshot

    def _require_snapshot(
        self, snapshot: Optional[MatcherSnapshot]
    ) -> MatcherSnapshot:
        snapshot = snapshot or self._snapshot
        if snapshot is None:
            raise RuntimeError("Matcher index has not been built; call ensure_fresh")
        return snapshot

    def resolve_best_match(
        self,
        query: Sequence[float] | np.ndarray,
        snapshot: Optional[MatcherSnapshot] = None,
    ) -> Optional[MatchResult]:
        snapshot = self._require_snapshot(snapshot)
        if snapshot.is_empty:
            return None
        vec = np.asarray(query, dtype=np.float64).ravel()
        if vec.shape[0] != snapshot.vectors.shape[1]:
            raise ValueError("Embedding shape mismatch")
        distances = np.linalg.norm(snapshot.vectors - vec, axis=1)
        # argmin returns the first minimum, so ties resolve in snapshot order.
        row = int(np.argmin(distances))
        return MatchResult(
            identity_id=snapshot.identity_ids[int(snapshot.owners[row])],
            distance=float(distances[row]),
        )

    def decide(
        self,
        query: Sequence[float] | np.ndarray,
        snapshot: Optional[MatcherSnapshot] = None,
    ) -> MatchDecision:
        snapshot = self._require_snapshot(snapshot)
        best = self.resolve_best_match(query, snapshot)
        if best is None:
            return MatchDecision(
                identity_id=None, distance=None, identified=False, confidence=0
            )
        identified, confidence = score_confidence(best.distance, snapshot.threshold)
        return MatchDecision(
            identity_id=best.identity_id,
            distance=best.distance,
            identified=identified,
            confidence=confidence,
        )


def names_by_id(identities: Iterable[Identity]) -> Dict[str, str]:
    return {identity.id: identity.name for identity in identities}
