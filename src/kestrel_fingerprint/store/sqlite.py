"""Durable fingerprint store on aiosqlite.

Expects a connection on which ``apply_migrations()`` has already run.
All writes go through one lock so each read-modify-write runs as a
single transaction on the shared connection.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from datetime import datetime

import aiosqlite

from kestrel_fingerprint.errors import StoreUnavailable
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


@asynccontextmanager
async def _guard(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except (aiosqlite.Error, ValueError) as exc:
        logger.warning("Fingerprint store %s failed: %s", operation, exc)
        raise StoreUnavailable(f"fingerprint store {operation} failed") from exc


class SQLiteFingerprintStore(FingerprintStore):
    """Fingerprint store persisted in the ``fingerprint_*`` tables."""

    def __init__(
        self,
        db: aiosqlite.Connection,
        *,
        index_keys: Iterable[str] = DEFAULT_INDEX_KEYS,
        history_cap: int = DEFAULT_SCORE_HISTORY_CAP,
    ) -> None:
        super().__init__(history_cap=history_cap)
        self._db = db
        self._index_keys = tuple(index_keys)
        self._write_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Row loading
    # ------------------------------------------------------------------

    async def _load(self, device_id: str) -> FingerprintRecord | None:
        cursor = await self._db.execute(
            "SELECT device_id, schema_version, first_seen_at, last_seen_at "
            "FROM fingerprints WHERE device_id = ?",
            (device_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None

        cursor = await self._db.execute(
            "SELECT feature_key, feature_hash FROM fingerprint_features WHERE device_id = ?",
            (device_id,),
        )
        features = {r[0]: r[1] for r in await cursor.fetchall()}

        cursor = await self._db.execute(
            "SELECT linked_id FROM fingerprint_linked_ids WHERE device_id = ?",
            (device_id,),
        )
        linked = frozenset(r[0] for r in await cursor.fetchall())

        cursor = await self._db.execute(
            "SELECT observed_at, score FROM fingerprint_scores WHERE device_id = ? ORDER BY id",
            (device_id,),
        )
        history = tuple(
            (datetime.fromisoformat(r[0]), float(r[1])) for r in await cursor.fetchall()
        )

        return FingerprintRecord(
            device_id=row[0],
            schema_version=row[1],
            first_seen_at=datetime.fromisoformat(row[2]),
            last_seen_at=datetime.fromisoformat(row[3]),
            features=features,
            linked_ids=linked,
            score_history=history,
        )

    async def _write(self, record: FingerprintRecord, *, exists: bool) -> None:
        if exists:
            await self._db.execute(
                "UPDATE fingerprints SET last_seen_at = ? WHERE device_id = ?",
                (record.last_seen_at.isoformat(), record.device_id),
            )
        else:
            await self._db.execute(
                "INSERT INTO fingerprints (device_id, schema_version, first_seen_at, last_seen_at) "
                "VALUES (?, ?, ?, ?)",
                (
                    record.device_id,
                    record.schema_version,
                    record.first_seen_at.isoformat(),
                    record.last_seen_at.isoformat(),
                ),
            )
        await self._db.executemany(
            "INSERT INTO fingerprint_features (device_id, feature_key, feature_hash) "
            "VALUES (?, ?, ?) "
            "ON CONFLICT(device_id, feature_key) DO UPDATE SET feature_hash = excluded.feature_hash",
            [(record.device_id, k, v) for k, v in record.features.items()],
        )
        await self._db.executemany(
            "INSERT OR IGNORE INTO fingerprint_linked_ids (device_id, linked_id) VALUES (?, ?)",
            [(record.device_id, linked) for linked in record.linked_ids],
        )

    # ------------------------------------------------------------------
    # FingerprintStore
    # ------------------------------------------------------------------

    async def lookup_candidates(self, feature_hashes: Mapping[str, str]) -> list[FingerprintRecord]:
        entries = index_entries(feature_hashes, self._index_keys)
        async with _guard("lookup"):
            if entries:
                clause = " OR ".join(["(feature_key = ? AND feature_hash = ?)"] * len(entries))
                params = [part for entry in entries for part in entry]
                cursor = await self._db.execute(
                    "SELECT DISTINCT device_id FROM fingerprint_features "
                    f"WHERE {clause} ORDER BY device_id",
                    params,
                )
            else:
                cursor = await self._db.execute(
                    "SELECT device_id FROM fingerprints ORDER BY device_id"
                )
            ids = [r[0] for r in await cursor.fetchall()]

            records = []
            for device_id in ids:
                record = await self._load(device_id)
                if record is not None:
                    records.append(record)
            return records

    async def get(self, device_id: str) -> FingerprintRecord | None:
        async with _guard("get"):
            return await self._load(device_id)

    async def create(
        self,
        device_id: str,
        feature_hashes: Mapping[str, str],
        *,
        now: datetime,
        linked_id: str | None = None,
    ) -> FingerprintRecord:
        async with self._write_lock, _guard("create"):
            existing = await self._load(device_id)
            if existing is not None:
                merged = with_linked_id(existing, linked_id)
                if merged is not existing:
                    await self._db.execute(
                        "INSERT OR IGNORE INTO fingerprint_linked_ids (device_id, linked_id) "
                        "VALUES (?, ?)",
                        (device_id, linked_id),
                    )
                    await self._db.commit()
                return merged
            record = new_record(device_id, feature_hashes, now=now, linked_id=linked_id)
            try:
                await self._write(record, exists=False)
                await self._db.commit()
            except BaseException:
                await self._db.rollback()
                raise
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
        async with self._write_lock, _guard("upsert"):
            existing = await self._load(device_id)
            if existing is None:
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
            try:
                await self._write(record, exists=existing is not None)
                if existing is not None:
                    await self._db.execute(
                        "INSERT INTO fingerprint_scores (device_id, observed_at, score) "
                        "VALUES (?, ?, ?)",
                        (device_id, now.isoformat(), match.score),
                    )
                    await self._db.execute(
                        "DELETE FROM fingerprint_scores WHERE device_id = ? AND id NOT IN ("
                        "SELECT id FROM fingerprint_scores WHERE device_id = ? "
                        "ORDER BY id DESC LIMIT ?)",
                        (device_id, device_id, self.history_cap),
                    )
                await self._db.commit()
            except BaseException:
                await self._db.rollback()
                raise
            return record

    async def delete(self, device_id: str) -> None:
        async with self._write_lock, _guard("delete"):
            try:
                for table in (
                    "fingerprint_scores",
                    "fingerprint_linked_ids",
                    "fingerprint_features",
                    "fingerprints",
                ):
                    await self._db.execute(f"DELETE FROM {table} WHERE device_id = ?", (device_id,))
                await self._db.commit()
            except BaseException:
                await self._db.rollback()
                raise

    async def count(self) -> int:
        async with _guard("count"):
            cursor = await self._db.execute("SELECT COUNT(*) FROM fingerprints")
            row = await cursor.fetchone()
            return int(row[0]) if row else 0
