"""Append-only visitor event log with windowed aggregate queries.

Each query reports, per named window, seven counts for one visitor:

- ``distinct_ip``, ``distinct_linked_id``, ``distinct_country`` and
  ``events`` over the visitor's own events in the window
- ``ip_events``: events in the window from *any* visitor on an IP this
  visitor used within the same window
- ``distinct_ip_by_linked_id`` and ``distinct_visitor_by_linked_id``:
  over every event in the window carrying a linked id the visitor sent
  within the same window; zero when it sent none

An event is in a window when ``timestamp > now - window``. Counts are
recomputed on every read and never stored.
"""

from __future__ import annotations

import abc
import logging
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from types import MappingProxyType

from kestrel_fingerprint.errors import ConfigurationError, MalformedEvent

logger = logging.getLogger(__name__)

DIMENSIONS: tuple[str, ...] = (
    "distinct_ip",
    "distinct_linked_id",
    "distinct_country",
    "events",
    "ip_events",
    "distinct_ip_by_linked_id",
    "distinct_visitor_by_linked_id",
)

DEFAULT_WINDOWS: Mapping[str, timedelta] = MappingProxyType(
    {
        "5m": timedelta(minutes=5),
        "1h": timedelta(hours=1),
        "24h": timedelta(hours=24),
    }
)

DEFAULT_RETENTION = timedelta(hours=24)
DEFAULT_MAX_EVENTS = 100_000


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VisitorEvent:
    """One observed visit.

    ``timestamp`` must be timezone-aware. ``visitor_id`` and ``timestamp``
    are typed optional only so that malformed input can be represented and
    rejected by ``validate_event``.
    """

    visitor_id: str | None
    ip: str = ""
    timestamp: datetime | None = None
    linked_id: str | None = None
    country: str | None = None
    url: str | None = None
    event_type: str | None = None


@dataclass(frozen=True)
class VelocityWindowSet:
    """Per-window counts for every velocity dimension.

    Parameters
    ----------
    windows:
        Window names in configured order.
    counts:
        ``dimension -> window name -> count``.
    """

    windows: tuple[str, ...]
    counts: Mapping[str, Mapping[str, int]]

    def get(self, dimension: str, window: str) -> int | None:
        """Return one count, or ``None`` if the window or dimension is unknown."""
        return self.counts.get(dimension, {}).get(window)

    def has_window(self, window: str) -> bool:
        return window in self.windows

    def to_dict(self) -> dict[str, dict[str, int]]:
        return {dim: dict(per_window) for dim, per_window in self.counts.items()}

    @classmethod
    def empty(cls, windows: Sequence[str]) -> VelocityWindowSet:
        names = tuple(windows)
        return cls(windows=names, counts={dim: {w: 0 for w in names} for dim in DIMENSIONS})


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_event(event: VisitorEvent) -> None:
    """Raise ``MalformedEvent`` if *event* cannot be recorded."""
    if not isinstance(event.visitor_id, str) or not event.visitor_id:
        raise MalformedEvent("visitor event is missing visitor_id", field="visitor_id")
    if not isinstance(event.timestamp, datetime):
        raise MalformedEvent("visitor event is missing timestamp", field="timestamp")
    if event.timestamp.tzinfo is None or event.timestamp.utcoffset() is None:
        raise MalformedEvent("visitor event timestamp must be timezone-aware", field="timestamp")


def validate_windows(windows: Mapping[str, timedelta]) -> dict[str, timedelta]:
    """Return *windows* as a plain dict, raising ``ConfigurationError`` if invalid."""
    if not windows:
        raise ConfigurationError("At least one velocity window must be configured")
    for name, span in windows.items():
        if span <= timedelta(0):
            raise ConfigurationError(f"Velocity window {name!r} must be positive, got {span}")
    return dict(windows)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def low_water_mark(max_events: int) -> int:
    """Size an overflowing index is trimmed back to.

    The gap below ``max_events`` spaces overflow passes apart by at least a
    tenth of the cap in appends.
    """
    return max(1, max_events - max(1, max_events // 10))


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def compute_window_set(
    events: Sequence[VisitorEvent],
    visitor_id: str,
    windows: Mapping[str, timedelta],
    now: datetime,
) -> VelocityWindowSet:
    """Aggregate *events* for *visitor_id* over each window ending at *now*."""
    cutoffs = {name: now - span for name, span in windows.items()}
    own = [e for e in events if e.visitor_id == visitor_id]

    counts: dict[str, dict[str, int]] = {dim: {} for dim in DIMENSIONS}
    for name, cutoff in cutoffs.items():
        recent = [e for e in own if e.timestamp > cutoff]
        ips = {e.ip for e in recent if e.ip}
        linked_ids = {e.linked_id for e in recent if e.linked_id}

        in_window = [e for e in events if e.timestamp > cutoff] if ips or linked_ids else []
        linked_recent = [e for e in in_window if e.linked_id in linked_ids]

        counts["distinct_ip"][name] = len(ips)
        counts["distinct_linked_id"][name] = len(linked_ids)
        counts["distinct_country"][name] = len({e.country for e in recent if e.country})
        counts["events"][name] = len(recent)
        counts["ip_events"][name] = sum(1 for e in in_window if e.ip in ips)
        counts["distinct_ip_by_linked_id"][name] = len({e.ip for e in linked_recent if e.ip})
        counts["distinct_visitor_by_linked_id"][name] = len(
            {e.visitor_id for e in linked_recent}
        )

    return VelocityWindowSet(windows=tuple(windows), counts=counts)


# ---------------------------------------------------------------------------
# Index contract
# ---------------------------------------------------------------------------

class VelocityIndex(abc.ABC):
    """Abstract async velocity index."""

    def __init__(self, *, windows: Mapping[str, timedelta] = DEFAULT_WINDOWS) -> None:
        self._windows = validate_windows(windows)

    @property
    def windows(self) -> Mapping[str, timedelta]:
        return MappingProxyType(self._windows)

    @abc.abstractmethod
    async def record(self, event: VisitorEvent) -> None:
        """Validate and append *event*. Raises ``MalformedEvent``."""

    @abc.abstractmethod
    async def query(
        self,
        visitor_id: str,
        windows: Mapping[str, timedelta] | None = None,
        now: datetime | None = None,
    ) -> VelocityWindowSet:
        """Return window counts for *visitor_id*, defaulting to the index's windows."""

    @abc.abstractmethod
    async def compact(self, now: datetime | None = None, retention: timedelta = DEFAULT_RETENTION) -> int:
        """Drop events with ``timestamp <= now - retention``. Returns the number dropped."""

    @abc.abstractmethod
    async def size(self) -> int:
        """Number of retained events."""

    async def close(self) -> None:
        """Release backend resources. No-op by default."""


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class InMemoryVelocityIndex(VelocityIndex):
    """Reference index over a Python list.

    Appends hold a short lock. The list object is only ever appended to or
    swapped for a new one, so a reader holding ``(list, length)`` sees a
    stable prefix without locking. Compaction filters such a snapshot
    outside the lock and swaps in the survivors plus anything appended
    meanwhile.

    Past ``max_events`` an append first drops events older than the longest
    window as seen by *clock*, then evicts the oldest by timestamp down to
    ``low_water_mark(max_events)``.
    """

    def __init__(
        self,
        *,
        windows: Mapping[str, timedelta] = DEFAULT_WINDOWS,
        max_events: int = DEFAULT_MAX_EVENTS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(windows=windows)
        if max_events < 1:
            raise ConfigurationError("max_events must be at least 1")
        self._max_events = max_events
        self._low_water = low_water_mark(max_events)
        self._clock = clock
        self._events: list[VisitorEvent] = []
        self._lock = threading.Lock()
        self._compact_lock = threading.Lock()

    def _snapshot(self) -> tuple[list[VisitorEvent], int]:
        with self._lock:
            return self._events, len(self._events)

    def _rewrite(self, select: Callable[[list[VisitorEvent]], list[VisitorEvent]]) -> int:
        """Replace the snapshot prefix with ``select(prefix)``. Returns the number removed."""
        with self._compact_lock:
            events, length = self._snapshot()
            survivors = select(events[:length])
            with self._lock:
                tail = self._events[length:]
                self._events = survivors + tail
            return length - len(survivors)

    def _drop_through(self, cutoff: datetime) -> int:
        """Remove events with ``timestamp <= cutoff``."""
        return self._rewrite(lambda events: [e for e in events if e.timestamp > cutoff])

    def _trim_to(self, limit: int) -> int:
        """Remove the oldest events by timestamp until at most *limit* remain."""

        def select(events: list[VisitorEvent]) -> list[VisitorEvent]:
            excess = len(events) - limit
            if excess <= 0:
                return events
            order = sorted(range(len(events)), key=lambda i: events[i].timestamp)
            doomed = set(order[:excess])
            return [e for i, e in enumerate(events) if i not in doomed]

        return self._rewrite(select)

    async def record(self, event: VisitorEvent) -> None:
        validate_event(event)
        with self._lock:
            self._events.append(event)
            overflow = len(self._events) > self._max_events

        if overflow:
            longest = max(self._windows.values())
            expired = self._drop_through(self._clock() - longest)
            evicted = self._trim_to(self._low_water)
            logger.info(
                "Velocity index exceeded %d events; dropped %d older than %s and %d oldest",
                self._max_events,
                expired,
                longest,
                evicted,
            )

    async def query(
        self,
        visitor_id: str,
        windows: Mapping[str, timedelta] | None = None,
        now: datetime | None = None,
    ) -> VelocityWindowSet:
        spans = validate_windows(windows) if windows is not None else self._windows
        events, length = self._snapshot()
        return compute_window_set(events[:length], visitor_id, spans, now or self._clock())

    async def compact(self, now: datetime | None = None, retention: timedelta = DEFAULT_RETENTION) -> int:
        return self._drop_through((now or self._clock()) - retention)

    async def size(self) -> int:
        return self._snapshot()[1]
