"""Tests for the in-memory fingerprint store."""

import asyncio
from datetime import timedelta

import pytest

from kestrel_fingerprint.fingerprint.matcher import Classification, MatchResult
from kestrel_fingerprint.store.base import apply_upsert, index_entries, new_record
from kestrel_fingerprint.store.memory import LOCK_STRIPES, InMemoryFingerprintStore

HASHES = {"canvas": "c1", "fonts": "f1", "timezone": "tz1"}


def _known(device_id: str, matched, score: float = 1.0) -> MatchResult:
    return MatchResult(
        classification=Classification.KNOWN_DEVICE,
        score=score,
        matched_keys=frozenset(matched),
        device_id=device_id,
    )


class TestUpsertRules:
    def test_matched_keys_are_left_alone(self, t0) -> None:
        record = new_record("dev", HASHES, now=t0)
        incoming = {"canvas": "c1", "fonts": "f2", "audio": "a1"}
        match = _known("dev", {"canvas"}, 0.7)
        updated = apply_upsert(record, incoming, match, now=t0, linked_id=None, history_cap=5)
        assert updated.features == {"canvas": "c1", "fonts": "f2", "timezone": "tz1", "audio": "a1"}

    def test_last_seen_never_moves_backwards(self, t0) -> None:
        record = new_record("dev", HASHES, now=t0)
        match = _known("dev", HASHES)
        updated = apply_upsert(
            record, HASHES, match, now=t0 - timedelta(hours=1), linked_id=None, history_cap=5
        )
        assert updated.last_seen_at == t0
        assert updated.first_seen_at <= updated.last_seen_at

    def test_history_is_capped(self, t0) -> None:
        record = new_record("dev", HASHES, now=t0)
        match = _known("dev", HASHES)
        for i in range(10):
            record = apply_upsert(
                record, HASHES, match, now=t0 + timedelta(seconds=i), linked_id=None, history_cap=3
            )
        assert len(record.score_history) == 3
        assert record.score_history[0][0] == t0 + timedelta(seconds=7)

    def test_index_entries(self) -> None:
        assert index_entries(HASHES, ["fonts", "audio", "canvas"]) == [("fonts", "f1"), ("canvas", "c1")]


class TestInMemoryStore:
    async def test_create_and_get(self, t0) -> None:
        store = InMemoryFingerprintStore()
        record = await store.upsert("dev", HASHES, MatchResult.new_device(), now=t0, linked_id="u1")
        assert record.first_seen_at == record.last_seen_at == t0
        assert record.linked_ids == frozenset({"u1"})
        assert await store.get("dev") == record
        assert await store.count() == 1

    async def test_create_existing_returns_existing(self, t0) -> None:
        store = InMemoryFingerprintStore()
        first = await store.create("dev", HASHES, now=t0)
        second = await store.create("dev", {"canvas": "other"}, now=t0 + timedelta(hours=1))
        assert second == first

    async def test_refresh_updates_matched_record(self, t0) -> None:
        store = InMemoryFingerprintStore()
        await store.create("dev", HASHES, now=t0)
        later = t0 + timedelta(minutes=5)
        match = _known("dev", {"canvas", "fonts"}, 0.8)
        record = await store.upsert(
            "new-id", dict(HASHES, timezone="tz2"), match, now=later, linked_id="u2"
        )
        assert record.device_id == "dev"
        assert record.features["timezone"] == "tz2"
        assert record.last_seen_at == later
        assert record.score_history == ((later, 0.8),)
        assert await store.get("new-id") is None

    async def test_lookup_uses_index(self, t0) -> None:
        store = InMemoryFingerprintStore(index_keys=["canvas"])
        await store.create("a", {"canvas": "c1"}, now=t0)
        await store.create("b", {"canvas": "c2"}, now=t0)
        found = await store.lookup_candidates({"canvas": "c1", "fonts": "x"})
        assert [r.device_id for r in found] == ["a"]

    async def test_lookup_without_indexed_keys_scans_everything(self, t0) -> None:
        store = InMemoryFingerprintStore(index_keys=["canvas"])
        await store.create("b", {"fonts": "f"}, now=t0)
        await store.create("a", {"fonts": "g"}, now=t0)
        found = await store.lookup_candidates({"fonts": "f"})
        assert [r.device_id for r in found] == ["a", "b"]

    async def test_reindex_after_refresh(self, t0) -> None:
        store = InMemoryFingerprintStore(index_keys=["canvas"])
        await store.create("dev", {"canvas": "old", "fonts": "f"}, now=t0)
        await store.upsert("x", {"canvas": "new", "fonts": "f"}, _known("dev", {"fonts"}, 0.6), now=t0)
        assert await store.lookup_candidates({"canvas": "old"}) == []
        assert [r.device_id for r in await store.lookup_candidates({"canvas": "new"})] == ["dev"]

    async def test_delete_is_idempotent(self, t0) -> None:
        store = InMemoryFingerprintStore()
        await store.create("dev", HASHES, now=t0)
        await store.delete("dev")
        await store.delete("dev")
        assert await store.get("dev") is None
        assert await store.lookup_candidates(HASHES) == []

    async def test_refresh_of_purged_record_recreates_it(self, t0) -> None:
        store = InMemoryFingerprintStore()
        record = await store.upsert("dev", HASHES, _known("dev", HASHES), now=t0)
        assert record.device_id == "dev"
        assert record.score_history == ()

    async def test_concurrent_creates_yield_one_record(self, t0) -> None:
        store = InMemoryFingerprintStore()
        results = await asyncio.gather(
            *(store.create("dev", HASHES, now=t0 + timedelta(seconds=i)) for i in range(10))
        )
        assert len({r.first_seen_at for r in results}) == 1
        assert await store.count() == 1

    async def test_losing_create_keeps_its_linked_id(self, t0) -> None:
        store = InMemoryFingerprintStore()
        results = await asyncio.gather(
            store.create("dev", HASHES, now=t0, linked_id="u1"),
            store.create("dev", HASHES, now=t0, linked_id="u2"),
        )
        assert results[1].linked_ids == frozenset({"u1", "u2"})
        assert (await store.get("dev")).linked_ids == frozenset({"u1", "u2"})

    async def test_lock_pool_does_not_grow_with_devices(self, t0) -> None:
        store = InMemoryFingerprintStore()
        pool = len(store._locks)
        for i in range(LOCK_STRIPES * 4):
            await store.create(f"dev-{i}", HASHES, now=t0)
            await store.delete(f"dev-{i}")
        assert len(store._locks) == pool == LOCK_STRIPES
        assert await store.count() == 0

    def test_history_cap_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            InMemoryFingerprintStore(history_cap=0)
