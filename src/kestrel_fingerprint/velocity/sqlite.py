"""Velocity index persisted in the ``visitor_events`` table.

Same semantics as the in-memory index; the counts are computed in SQL.
Timestamps are stored as integer microseconds since the epoch.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone

import aiosqlite

from kestrel_fingerprint.errors import ConfigurationError, StoreUnavailable
from kestrel_fingerprint.velocity.index import (
    DEFAULT_MAX_EVENTS,
    DEFAULT_RETENTION,
    DEFAULT_WINDOWS,
    DIMENSIONS,
    VelocityIndex,
    VelocityWindowSet,
    VisitorEvent,
    low_water_mark,
    utcnow,
    validate_event,
    validate_windows,
)

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)

_OWN_SQL = """
SELECT COUNT(DISTINCT NULLIF(ip, '')),
       COUNT(DISTINCT NULLIF(linked_id, '')),
       COUNT(DISTINCT NULLIF(country, '')),
       COUNT(*)
FROM visitor_events
WHERE visitor_id = ? AND ts_us > ?
"""

_IP_EVENTS_SQL = """
SELECT COUNT(*)
FROM visitor_events
WHERE ts_us > ?
  AND ip IN (
      SELECT DISTINCT ip FROM visitor_events
      WHERE visitor_id = ? AND ts_us > ? AND ip != ''
  )
"""

_LINKED_SQL = """
SELECT COUNT(DISTINCT NULLIF(ip, '')), COUNT(DISTINCT visitor_id)
FROM visitor_events
WHERE ts_us > ?
  AND linked_id IN (
      SELECT DISTINCT linked_id FROM visitor_events
      WHERE visitor_id = ? AND ts_us > ? AND linked_id IS NOT NULL AND linked_id != ''
  )
"""

_EVICT_OLDEST_SQL = """
DELETE FROM visitor_events
WHERE seq IN (SELECT seq FROM visitor_events ORDER BY ts_us, seq LIMIT ?)
"""


def to_micros(ts: datetime) -> int:
    return (ts - _EPOCH) // _MICROSECOND


def from_micros(value: int) -> datetime:
    return _EPOCH + timedelta(microseconds=value)


class SQLiteVelocityIndex(VelocityIndex):
    """Durable velocity index on an aiosqlite connection with migrations applied.

    The row count is read once and then tracked across appends, so the
    ``max_events`` check costs no query per insert. Overflow handling
    matches ``InMemoryVelocityIndex``.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        *,
        windows: Mapping[str, timedelta] = DEFAULT_WINDOWS,
        max_events: int = DEFAULT_MAX_EVENTS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(windows=windows)
        if max_events < 1:
            raise ConfigurationError("max_events must be at least 1")
        self._db = db
        self._max_events = max_events
        self._low_water = low_water_mark(max_events)
        self._clock = clock
        self._count: int | None = None
        self._write_lock = asyncio.Lock()

    async def _row_count(self) -> int:
        cursor = await self._db.execute("SELECT COUNT(*) FROM visitor_events")
        (total,) = await cursor.fetchone()
        return int(total)

    async def record(self, event: VisitorEvent) -> None:
        validate_event(event)
        try:
            async with self._write_lock:
                if self._count is None:
                    self._count = await self._row_count()
                await self._db.execute(
                    "INSERT INTO visitor_events "
                    "(visitor_id, ip, linked_id, country, url, event_type, ts_us) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        event.visitor_id,
                        event.ip or "",
                        event.linked_id,
                        event.country,
                        event.url,
                        event.event_type,
                        to_micros(event.timestamp),
                    ),
                )
                await self._db.commit()
                self._count += 1
                if self._count > self._max_events:
                    await self._shrink()
        except aiosqlite.Error as exc:
            self._count = None
            raise StoreUnavailable("velocity index append failed") from exc

    async def _shrink(self) -> None:
        longest = max(self._windows.values())
        cutoff = to_micros(self._clock() - longest)
        cursor = await self._db.execute("DELETE FROM visitor_events WHERE ts_us <= ?", (cutoff,))
        expired = cursor.rowcount
        remaining = await self._row_count()
        evicted = 0
        if remaining > self._low_water:
            cursor = await self._db.execute(_EVICT_OLDEST_SQL, (remaining - self._low_water,))
            evicted = cursor.rowcount
        await self._db.commit()
        self._count = remaining - evicted
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
        now = now or self._clock()
        counts: dict[str, dict[str, int]] = {dim: {} for dim in DIMENSIONS}

        try:
            for name, span in spans.items():
                cutoff = to_micros(now - span)

                cursor = await self._db.execute(_OWN_SQL, (visitor_id, cutoff))
                ips, linked, countries, events = await cursor.fetchone()

                cursor = await self._db.execute(_IP_EVENTS_SQL, (cutoff, visitor_id, cutoff))
                (ip_events,) = await cursor.fetchone()

                cursor = await self._db.execute(_LINKED_SQL, (cutoff, visitor_id, cutoff))
                linked_ips, linked_visitors = await cursor.fetchone()

                counts["distinct_ip"][name] = ips
                counts["distinct_linked_id"][name] = linked
                counts["distinct_country"][name] = countries
                counts["events"][name] = events
                counts["ip_events"][name] = ip_events
                counts["distinct_ip_by_linked_id"][name] = linked_ips
                counts["distinct_visitor_by_linked_id"][name] = linked_visitors
        except aiosqlite.Error as exc:
            raise StoreUnavailable("velocity query failed") from exc

        return VelocityWindowSet(windows=tuple(spans), counts=counts)

    async def compact(self, now: datetime | None = None, retention: timedelta = DEFAULT_RETENTION) -> int:
        cutoff = to_micros((now or self._clock()) - retention)
        try:
            async with self._write_lock:
                cursor = await self._db.execute(
                    "DELETE FROM visitor_events WHERE ts_us <= ?", (cutoff,)
                )
                await self._db.commit()
                if self._count is not None:
                    self._count -= cursor.rowcount
                return cursor.rowcount
        except aiosqlite.Error as exc:
            raise StoreUnavailable("velocity compaction failed") from exc

    async def size(self) -> int:
        try:
            cursor = await self._db.execute("SELECT COUNT(*) FROM visitor_events")
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StoreUnavailable("velocity size query failed") from exc
        return int(row[0]) if row else 0
