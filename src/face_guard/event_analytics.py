from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from .face_types import RecognitionEvent

AGE_GROUPS = ("<18", "18-30", "30-50", "50+")


def _age_group(age: int) -> str:
    if age < 18:
        return "<18"
    if age < 30:
        return "18-30"
    if age < 50:
        return "30-50"
    return "50+"


@dataclass(frozen=True)
class LogSummary:
    total: int
    unknown: int
    identified: int
    average_age: Optional[float]
    gender_counts: Dict[str, int]
    # Event count per local hour of day, index 0..23.
    hourly: List[int]
    age_groups: Dict[str, int]
    # (identity name, count), most frequent first.
    top_identities: List[Tuple[str, int]] = field(default_factory=list)


def summarize_events(
    events: Iterable[RecognitionEvent], top_n: int = 5
) -> LogSummary:
    """Aggregate an event archive into dashboard figures."""
    events = list(events)
    unknown = sum(1 for event in events if event.is_unknown)
    ages = [event.age for event in events if event.age is not None]
    gender_counts: Dict[str, int] = {}
    hourly = [0] * 24
    age_groups = {group: 0 for group in AGE_GROUPS}
    by_name: Dict[str, int] = {}
    for event in events:
        if event.gender:
            gender_counts[event.gender] = gender_counts.get(event.gender, 0) + 1
        hourly[datetime.fromtimestamp(event.timestamp / 1000).hour] += 1
        if event.age is not None:
            age_groups[_age_group(event.age)] += 1
        if not event.is_unknown:
            by_name[event.identity_name] = by_name.get(event.identity_name, 0) + 1
    ranked = sorted(by_name.items(), key=lambda item: (-item[1], item[0]))
    return LogSummary(
        total=len(events),
        unknown=unknown,
        identified=len(events) - unknown,
        average_age=(sum(ages) / len(ages)) if ages else None,
        gender_counts=gender_counts,
        hourly=hourly,
        age_groups=age_groups,
        top_identities=ranked[:top_n],
    )
