"""Integration tests for the SQLite velocity index."""

import random
from datetime import timedelta

import pytest

from kestrel_fingerprint.errors import MalformedEvent
from kestrel_fingerprint.velocity.index import DIMENSIONS, InMemoryVelocityIndex, VisitorEvent
from kestrel_fingerprint.velocity.sqlite import SQLiteVelocityIndex, from_micros, to_micros


@pytest.fixture
def index(db):
    return SQLiteVelocityIndex(db)


def _event(visitor="v1", ip="203.0.113.1", at=None, **kwargs):
    return VisitorEvent(visitor_id=visitor, ip=ip, timestamp=at, **kwargs)


def test_micros_round_trip(t0) -> None:
    assert from_micros(to_micros(t0)) == t0


async def test_malformed_event_is_not_stored(index) -> None:
    with pytest.raises(MalformedEvent) as excinfo:
        await index.record(_event(at=None))
    assert excinfo.value.field == "timestamp"
    assert await index.size() == 0


async def test_distinct_ips(index, t0) -> None:
    for i in range(5):
        await index.record(_event(ip=f"198.51.100.{i}", at=t0 + timedelta(seconds=i)))
    result = await index.query("v1", now=t0 + timedelta(minutes=1))
    assert result.get("distinct_ip", "5m") == 5
    assert result.get("events", "24h") == 5


async def test_boundary_is_exclusive(index, t0) -> None:
    await index.record(_event(at=t0))
    result = await index.query("v1", now=t0 + timedelta(hours=1))
    assert result.get("events", "1h") == 0
    assert result.get("events", "24h") == 1


async def test_matches_in_memory_index(index, t0) -> None:
    rng = random.Random(7)
    reference = InMemoryVelocityIndex()
    for _ in range(150):
        event = _event(
            rng.choice(["a", "b", "c"]),
            ip=rng.choice(["", "198.51.100.1", "198.51.100.2", "198.51.100.3"]),
            at=t0 - timedelta(seconds=rng.randrange(0, 26 * 3600)),
            linked_id=rng.choice([None, "", "acct-1", "acct-2"]),
            country=rng.choice([None, "US", "DE"]),
        )
        await index.record(event)
        await reference.record(event)
    for visitor in ("a", "b", "c", "nobody"):
        expected = await reference.query(visitor, now=t0)
        actual = await index.query(visitor, now=t0)
        assert actual.to_dict() == expected.to_dict(), visitor


async def test_compaction_preserves_live_queries(index, t0) -> None:
    for hours in (30, 25, 23, 1):
        await index.record(_event(at=t0 - timedelta(hours=hours), ip=f"198.51.100.{hours}"))
    before = (await index.query("v1", now=t0)).to_dict()
    dropped = await index.compact(t0, timedelta(hours=24))
    assert dropped == 2
    assert await index.size() == 2
    assert (await index.query("v1", now=t0)).to_dict() == before


async def test_max_events_eager_drop(db, t0) -> None:
    index = SQLiteVelocityIndex(db, max_events=3, clock=lambda: t0 + timedelta(seconds=1))
    await index.record(_event(at=t0 - timedelta(hours=48)))
    await index.record(_event(at=t0 - timedelta(hours=47)))
    await index.record(_event(at=t0))
    await index.record(_event(at=t0 + timedelta(seconds=1)))
    assert await index.size() == 2


async def test_future_dated_event_keeps_recent_history(db, t0) -> None:
    index = SQLiteVelocityIndex(db, max_events=5, clock=lambda: t0)
    for i in range(5):
        await index.record(_event(ip=f"198.51.100.{i}", at=t0 - timedelta(minutes=1)))
    await index.record(_event("intruder", at=t0 + timedelta(days=365)))
    assert await index.size() == 4
    assert (await index.query("v1", now=t0)).get("events", "5m") == 3
    assert (await index.query("intruder", now=t0 + timedelta(days=365))).get("events", "5m") == 1


async def test_overflow_evicts_oldest_first(db, t0) -> None:
    index = SQLiteVelocityIndex(db, max_events=20, clock=lambda: t0)
    for i in range(21):
        await index.record(_event(f"v{i}", at=t0 - timedelta(seconds=100 - i)))
    assert await index.size() == 18
    assert (await index.query("v2", now=t0)).get("events", "5m") == 0
    assert (await index.query("v3", now=t0)).get("events", "5m") == 1


async def test_compaction_frees_room_under_the_cap(db, t0) -> None:
    index = SQLiteVelocityIndex(db, max_events=3, clock=lambda: t0)
    for hours in (30, 29, 28):
        await index.record(_event(at=t0 - timedelta(hours=hours)))
    assert await index.compact(t0, timedelta(hours=24)) == 3
    for seconds in (3, 2, 1):
        await index.record(_event(at=t0 - timedelta(seconds=seconds)))
    assert await index.size() == 3


async def test_ip_and_linked_sets_are_per_window(index, t0) -> None:
    shared, fresh = "198.51.100.10", "198.51.100.20"
    await index.record(_event("a", ip=shared, at=t0 - timedelta(hours=30), linked_id="acct"))
    await index.record(_event("a", ip=fresh, at=t0 - timedelta(minutes=1)))
    await index.record(_event("b", ip=shared, at=t0 - timedelta(minutes=10), linked_id="acct"))

    before = (await index.query("a", now=t0)).to_dict()
    assert before["ip_events"] == {"5m": 1, "1h": 1, "24h": 1}
    assert before["distinct_ip_by_linked_id"] == {"5m": 0, "1h": 0, "24h": 0}

    await index.compact(t0, timedelta(hours=24))
    assert (await index.query("a", now=t0)).to_dict() == before


async def test_every_dimension_reported(index, t0) -> None:
    result = await index.query("v1", now=t0)
    assert set(result.counts) == set(DIMENSIONS)
