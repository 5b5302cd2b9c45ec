"""Tests for the in-memory velocity index."""

import logging
import random
from datetime import timedelta, timezone, datetime

import pytest

from kestrel_fingerprint.errors import ConfigurationError, MalformedEvent
from kestrel_fingerprint.velocity.index import (
    DIMENSIONS,
    InMemoryVelocityIndex,
    VisitorEvent,
    compute_window_set,
)


def _event(visitor="v1", ip="203.0.113.1", at=None, **kwargs) -> VisitorEvent:
    return VisitorEvent(visitor_id=visitor, ip=ip, timestamp=at, **kwargs)


class TestRecord:
    async def test_missing_timestamp_rejected(self) -> None:
        index = InMemoryVelocityIndex()
        with pytest.raises(MalformedEvent) as excinfo:
            await index.record(_event(at=None))
        assert excinfo.value.field == "timestamp"
        assert await index.size() == 0

    async def test_missing_visitor_rejected(self, t0) -> None:
        index = InMemoryVelocityIndex()
        with pytest.raises(MalformedEvent) as excinfo:
            await index.record(_event(visitor="", at=t0))
        assert excinfo.value.field == "visitor_id"

    async def test_naive_timestamp_rejected(self) -> None:
        with pytest.raises(MalformedEvent):
            await InMemoryVelocityIndex().record(_event(at=datetime(2026, 1, 1)))

    async def test_invalid_windows_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            InMemoryVelocityIndex(windows={})
        with pytest.raises(ConfigurationError):
            InMemoryVelocityIndex(windows={"bad": timedelta(0)})


class TestQuery:
    async def test_five_ips_in_five_minutes(self, t0) -> None:
        index = InMemoryVelocityIndex()
        for i in range(5):
            await index.record(_event(ip=f"198.51.100.{i}", at=t0 + timedelta(seconds=30 * i)))
        result = await index.query("v1", now=t0 + timedelta(minutes=3))
        assert result.get("distinct_ip", "5m") == 5
        assert result.get("events", "5m") == 5

    async def test_window_boundary_is_exclusive(self, t0) -> None:
        index = InMemoryVelocityIndex()
        await index.record(_event(at=t0))
        exactly = await index.query("v1", now=t0 + timedelta(minutes=5))
        assert exactly.get("events", "5m") == 0
        assert exactly.get("events", "1h") == 1
        inside = await index.query("v1", now=t0 + timedelta(minutes=5) - timedelta(microseconds=1))
        assert inside.get("events", "5m") == 1

    async def test_unknown_visitor_is_all_zero(self, t0) -> None:
        index = InMemoryVelocityIndex()
        await index.record(_event(at=t0))
        result = await index.query("nobody", now=t0)
        assert all(result.get(dim, w) == 0 for dim in DIMENSIONS for w in ("5m", "1h", "24h"))

    async def test_empty_values_are_not_counted(self, t0) -> None:
        index = InMemoryVelocityIndex()
        await index.record(_event(ip="", at=t0, linked_id="", country=""))
        result = await index.query("v1", now=t0 + timedelta(seconds=1))
        assert result.get("events", "5m") == 1
        assert result.get("distinct_ip", "5m") == 0
        assert result.get("distinct_linked_id", "5m") == 0
        assert result.get("distinct_country", "5m") == 0

    async def test_ip_events_include_other_visitors(self, t0) -> None:
        index = InMemoryVelocityIndex()
        await index.record(_event("v1", ip="203.0.113.5", at=t0))
        for i in range(3):
            await index.record(_event(f"other{i}", ip="203.0.113.5", at=t0))
        await index.record(_event("other9", ip="203.0.113.99", at=t0))
        result = await index.query("v1", now=t0 + timedelta(seconds=1))
        assert result.get("ip_events", "5m") == 4

    async def test_linked_id_dimensions(self, t0) -> None:
        index = InMemoryVelocityIndex()
        await index.record(_event("v1", ip="203.0.113.1", at=t0, linked_id="acct-1"))
        await index.record(_event("v2", ip="203.0.113.2", at=t0, linked_id="acct-1"))
        await index.record(_event("v3", ip="203.0.113.3", at=t0, linked_id="acct-1"))
        await index.record(_event("v4", ip="203.0.113.4", at=t0, linked_id="acct-2"))
        result = await index.query("v1", now=t0 + timedelta(seconds=1))
        assert result.get("distinct_visitor_by_linked_id", "1h") == 3
        assert result.get("distinct_ip_by_linked_id", "1h") == 3
        assert result.get("distinct_linked_id", "1h") == 1

    async def test_visitor_without_linked_id_has_zero_linked_counts(self, t0) -> None:
        index = InMemoryVelocityIndex()
        await index.record(_event("v1", at=t0))
        await index.record(_event("v2", at=t0, linked_id="acct"))
        result = await index.query("v1", now=t0 + timedelta(seconds=1))
        assert result.get("distinct_visitor_by_linked_id", "1h") == 0

    async def test_custom_windows_per_query(self, t0) -> None:
        index = InMemoryVelocityIndex()
        await index.record(_event(at=t0))
        result = await index.query("v1", windows={"10s": timedelta(seconds=10)}, now=t0)
        assert result.windows == ("10s",)
        assert result.get("events", "10s") == 1
        assert result.get("events", "5m") is None

    async def test_nested_windows_are_monotonic(self, t0) -> None:
        rng = random.Random(3)
        index = InMemoryVelocityIndex()
        visitors = ["a", "b", "c"]
        for _ in range(300):
            await index.record(
                _event(
                    rng.choice(visitors),
                    ip=f"198.51.100.{rng.randrange(8)}",
                    at=t0 - timedelta(seconds=rng.randrange(0, 30 * 3600)),
                    linked_id=rng.choice([None, "x", "y"]),
                    country=rng.choice([None, "US", "DE", "FR"]),
                )
            )
        for visitor in visitors:
            result = await index.query(visitor, now=t0)
            for dim in DIMENSIONS:
                assert result.get(dim, "5m") <= result.get(dim, "1h") <= result.get(dim, "24h")


class TestCompaction:
    async def test_drops_only_expired_events(self, t0) -> None:
        index = InMemoryVelocityIndex()
        await index.record(_event(at=t0 - timedelta(hours=25)))
        await index.record(_event(at=t0 - timedelta(hours=24)))
        await index.record(_event(at=t0 - timedelta(hours=1)))
        dropped = await index.compact(t0, timedelta(hours=24))
        assert dropped == 2
        assert await index.size() == 1

    async def test_queries_unchanged_by_compaction(self, t0) -> None:
        rng = random.Random(11)
        index = InMemoryVelocityIndex()
        for _ in range(200):
            await index.record(
                _event(
                    rng.choice(["a", "b"]),
                    ip=f"198.51.100.{rng.randrange(6)}",
                    at=t0 - timedelta(minutes=rng.randrange(0, 48 * 60)),
                    linked_id=rng.choice([None, "acct"]),
                )
            )
        before = {v: (await index.query(v, now=t0)).to_dict() for v in ("a", "b")}
        await index.compact(t0, timedelta(hours=24))
        after = {v: (await index.query(v, now=t0)).to_dict() for v in ("a", "b")}
        assert before == after

    async def test_max_events_triggers_eager_compaction(self, t0) -> None:
        index = InMemoryVelocityIndex(max_events=3, clock=lambda: t0 + timedelta(seconds=1))
        await index.record(_event(at=t0 - timedelta(hours=30)))
        await index.record(_event(at=t0 - timedelta(hours=29)))
        await index.record(_event(at=t0))
        await index.record(_event(at=t0 + timedelta(seconds=1)))
        assert await index.size() == 2

    async def test_future_dated_event_does_not_wipe_the_log(self, t0) -> None:
        index = InMemoryVelocityIndex(max_events=5, clock=lambda: t0)
        for i in range(5):
            await index.record(_event(ip=f"198.51.100.{i}", at=t0 - timedelta(minutes=1)))
        await index.record(_event("intruder", at=t0 + timedelta(days=365)))
        assert await index.size() == 4
        result = await index.query("v1", now=t0)
        assert result.get("events", "5m") == 3

    async def test_overflow_evicts_oldest_down_to_low_water(self, t0) -> None:
        index = InMemoryVelocityIndex(max_events=20, clock=lambda: t0)
        for i in range(21):
            await index.record(_event(f"v{i}", at=t0 - timedelta(seconds=100 - i)))
        assert await index.size() == 18
        for i in range(3):
            assert (await index.query(f"v{i}", now=t0)).get("events", "5m") == 0
        assert (await index.query("v3", now=t0)).get("events", "5m") == 1

    async def test_overflow_passes_are_spaced_apart(self, t0, caplog) -> None:
        index = InMemoryVelocityIndex(max_events=20, clock=lambda: t0)
        with caplog.at_level(logging.INFO, logger="kestrel_fingerprint.velocity.index"):
            for i in range(24):
                await index.record(_event(f"v{i}", at=t0 - timedelta(seconds=100 - i)))
        passes = [r for r in caplog.records if "exceeded" in r.getMessage()]
        assert len(passes) == 2
        assert await index.size() == 18

    async def test_ip_sets_follow_the_window_across_compaction(self, t0) -> None:
        index = InMemoryVelocityIndex()
        shared, fresh = "198.51.100.10", "198.51.100.20"
        await index.record(_event("a", ip=shared, at=t0 - timedelta(hours=30), linked_id="acct"))
        await index.record(_event("a", ip=fresh, at=t0 - timedelta(minutes=1)))
        await index.record(_event("b", ip=shared, at=t0 - timedelta(minutes=10), linked_id="acct"))

        before = (await index.query("a", now=t0)).to_dict()
        assert before["ip_events"] == {"5m": 1, "1h": 1, "24h": 1}
        assert before["distinct_visitor_by_linked_id"] == {"5m": 0, "1h": 0, "24h": 0}

        await index.compact(t0, timedelta(hours=24))
        assert (await index.query("a", now=t0)).to_dict() == before


def test_compute_window_set_is_pure(t0) -> None:
    events = [_event(at=t0 - timedelta(minutes=m)) for m in (1, 10, 100)]
    windows = {"5m": timedelta(minutes=5), "1h": timedelta(hours=1)}
    result = compute_window_set(events, "v1", windows, t0)
    assert result.to_dict()["events"] == {"5m": 1, "1h": 2}
    assert len(events) == 3
