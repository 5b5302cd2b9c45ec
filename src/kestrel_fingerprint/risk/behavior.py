"""Per-session interaction counters for behavioral risk signals.

A session owns one ``InteractionCounters`` and passes it explicitly to
``combine``. Nothing here is module-level state: two sessions never share
tallies.
"""

from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime

INTERACTION_KINDS: tuple[str, ...] = ("mouse", "keyboard", "touch", "scroll")

DEFAULT_CAPACITY = 10_000
EXCESSIVE_EVENTS_PER_SECOND = 100.0
IDLE_EVENTS_PER_SECOND = 0.1
IDLE_MIN_DURATION_SECONDS = 10.0


@dataclass(frozen=True)
class ActivitySummary:
    duration_seconds: float
    events_per_second: float
    counts: dict[str, int]
    patterns: tuple[str, ...]

    @property
    def suspicious(self) -> bool:
        return bool(self.patterns)


class InteractionCounters:
    """Bounded ring buffer of ``(timestamp, kind)`` interaction events.

    The oldest entries are evicted once ``capacity`` is reached, so memory
    stays bounded however long the session lives. Rates are computed over
    the whole session since ``started_at``.
    """

    def __init__(self, started_at: datetime, *, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._started_at = started_at
        self._events: deque[tuple[datetime, str]] = deque(maxlen=capacity)
        self._totals: Counter[str] = Counter()

    @property
    def started_at(self) -> datetime:
        return self._started_at

    def record(self, kind: str, at: datetime) -> None:
        if kind not in INTERACTION_KINDS:
            raise ValueError(f"unknown interaction kind {kind!r}")
        self._events.append((at, kind))
        self._totals[kind] += 1

    def recent(self) -> list[tuple[datetime, str]]:
        """The retained tail of interaction events, oldest first."""
        return list(self._events)

    def summarize(self, now: datetime) -> ActivitySummary:
        """Return rates and the suspicious patterns observed so far."""
        duration = max((now - self._started_at).total_seconds(), 0.0)
        total = sum(self._totals.values())
        rate = total / duration if duration > 0 else 0.0
        counts = {kind: self._totals.get(kind, 0) for kind in INTERACTION_KINDS}

        patterns: list[str] = []
        if rate > EXCESSIVE_EVENTS_PER_SECOND:
            patterns.append("excessive_events")
        if rate < IDLE_EVENTS_PER_SECOND and duration > IDLE_MIN_DURATION_SECONDS:
            patterns.append("no_activity")
        if counts["keyboard"] > 0 and counts["mouse"] == 0:
            patterns.append("keyboard_only")

        return ActivitySummary(
            duration_seconds=duration,
            events_per_second=rate,
            counts=counts,
            patterns=tuple(patterns),
        )
