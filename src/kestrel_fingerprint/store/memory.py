"""In-memory fingerprint store with an inverted index on high-entropy keys."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping
from datetime import datetime

from kestrel_fingerprint.fingerprint.matcher import MatchResult
from kestrel_fingerprint.fingerprint.schema import DEFAULT_INDEX_KEYS
from kestrel_fingerprint.store.base import (
    DEFAULT_SCORE_HISTORY_CAP,
    FingerprintRecord,
    FingerprintStore,
    apply_upsert,
    index_entries,
    new_record,
    with_linked_id,
)

logger = logging.getLogger(__name__)

LOCK_STRIPES = 64


class InMemoryFingerprintStore(FingerprintStore):
    """Reference store backed by a dict and an inverted ``(key, hash)`` index.

    Candidate lookup consults the index over ``index_keys``. When the
    incoming hashes carry none of those keys every record is a candidate;
    this keeps sparse fingerprints matchable at the cost of a full scan.

    Writes to one device id are serialized on one of ``LOCK_STRIPES``
    locks chosen by hashing the id.
    """

    def __init__(
        self,
        *,
        index_keys: Iterable[str] = DEFAULT_INDEX_KEYS,
        history_cap: int = DEFAULT_SCORE_HISTORY_CAP,
    ) -> None:
        super().__init__(history_cap=history_cap)
        self._index_keys = tuple(index_keys)
        self._records: dict[str, FingerprintRecord] = {}
        self._index: dict[tuple[str, str], set[str]] = defaultdict(set)
        self._locks = tuple(asyncio.Lock() for _ in range(LOCK_STRIPES))

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        return self._locks[hash(device_id) % len(self._locks)]

    def _reindex(self, old: FingerprintRecord | None, new: FingerprintRecord | None) -> None:
        if old is not None:
            for entry in index_entries(old.features, self._index_keys):
                ids = self._index.get(entry)
                if ids is not None:
                    ids.discard(old.device_id)
                    if not ids:
                        del self._index[entry]
        if new is not None:
            for entry in index_entries(new.features, self._index_keys):
                self._index[entry].add(new.device_id)

    # ------------------------------------------------------------------
    # FingerprintStore
    # ------------------------------------------------------------------

    async def lookup_candidates(self, feature_hashes: Mapping[str, str]) -> list[FingerprintRecord]:
        entries = index_entries(feature_hashes, self._index_keys)
        if not entries:
            return [self._records[k] for k in sorted(self._records)]

        ids: set[str] = set()
        for entry in entries:
            ids.update(self._index.get(entry, ()))
        return [self._records[k] for k in sorted(ids) if k in self._records]

    async def get(self, device_id: str) -> FingerprintRecord | None:
        return self._records.get(device_id)

    async def create(
        self,
        device_id: str,
        feature_hashes: Mapping[str, str],
        *,
        now: datetime,
        linked_id: str | None = None,
    ) -> FingerprintRecord:
        async with self._lock_for(device_id):
            existing = self._records.get(device_id)
            if existing is not None:
                merged = with_linked_id(existing, linked_id)
                self._records[device_id] = merged
                return merged
            record = new_record(device_id, feature_hashes, now=now, linked_id=linked_id)
            self._records[device_id] = record
            self._reindex(None, record)
            logger.debug("Created fingerprint record %s", device_id[:12])
            return record

    async def _refresh(
        self,
        device_id: str,
        feature_hashes: Mapping[str, str],
        match: MatchResult,
        *,
        now: datetime,
        linked_id: str | None,
    ) -> FingerprintRecord:
        async with self._lock_for(device_id):
            existing = self._records.get(device_id)
            if existing is None:
                # Purged between classify and upsert
                record = new_record(device_id, feature_hashes, now=now, linked_id=linked_id)
            else:
                record = apply_upsert(
                    existing,
                    feature_hashes,
                    match,
                    now=now,
                    linked_id=linked_id,
                    history_cap=self.history_cap,
                )
            self._records[device_id] = record
            self._reindex(existing, record)
            return record

    async def delete(self, device_id: str) -> None:
        async with self._lock_for(device_id):
            record = self._records.pop(device_id, None)
            self._reindex(record, None)

    async def count(self) -> int:
        return len(self._records)
