"""Fingerprint store contract shared by the in-memory and SQLite backends.

A store holds one ``FingerprintRecord`` per device id. Records carry
per-feature hashes only. Every mutation of one device id is linearizable:
concurrent upserts of the same device never lose a score-history entry or
a linked id.
"""

from __future__ import annotations

import abc
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime

from kestrel_fingerprint.fingerprint.matcher import Classification, MatchResult
from kestrel_fingerprint.fingerprint.schema import SCHEMA_VERSION

DEFAULT_SCORE_HISTORY_CAP = 50


@dataclass(frozen=True)
class FingerprintRecord:
    """Persisted state of one device.

    Parameters
    ----------
    device_id:
        Full device identifier.
    schema_version:
        Schema version the feature hashes were derived under.
    features:
        Feature key -> per-feature hash.
    first_seen_at, last_seen_at:
        Aware UTC timestamps; ``first_seen_at <= last_seen_at``.
    linked_ids:
        Caller-supplied account ids observed with this device.
    score_history:
        ``(timestamp, score)`` pairs, oldest first, bounded by the store's cap.
    """

    device_id: str
    features: Mapping[str, str]
    first_seen_at: datetime
    last_seen_at: datetime
    schema_version: str = SCHEMA_VERSION
    linked_ids: frozenset[str] = field(default_factory=frozenset)
    score_history: tuple[tuple[datetime, float], ...] = ()

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "schema_version": self.schema_version,
            "features": dict(self.features),
            "first_seen_at": self.first_seen_at.isoformat(),
            "last_seen_at": self.last_seen_at.isoformat(),
            "linked_ids": sorted(self.linked_ids),
            "score_history": [
                {"timestamp": ts.isoformat(), "score": score} for ts, score in self.score_history
            ],
        }


def apply_upsert(
    record: FingerprintRecord,
    feature_hashes: Mapping[str, str],
    match: MatchResult,
    *,
    now: datetime,
    linked_id: str | None,
    history_cap: int,
) -> FingerprintRecord:
    """Return *record* refreshed by a KNOWN or VARIANT observation.

    Hashes for keys the match agreed on are left untouched; every other
    incoming hash overwrites or adds. Stored keys the observation did not
    report are kept.
    """
    features = dict(record.features)
    for key, value in feature_hashes.items():
        if key not in match.matched_keys:
            features[key] = value

    history = (*record.score_history, (now, match.score))
    if len(history) > history_cap:
        history = history[len(history) - history_cap:]

    return replace(
        with_linked_id(record, linked_id),
        features=features,
        last_seen_at=max(record.last_seen_at, now),
        score_history=history,
    )


def with_linked_id(record: FingerprintRecord, linked_id: str | None) -> FingerprintRecord:
    """Return *record* with *linked_id* added, or *record* itself if nothing changes."""
    if not linked_id or linked_id in record.linked_ids:
        return record
    return replace(record, linked_ids=record.linked_ids | {linked_id})


def new_record(
    device_id: str,
    feature_hashes: Mapping[str, str],
    *,
    now: datetime,
    linked_id: str | None = None,
) -> FingerprintRecord:
    return FingerprintRecord(
        device_id=device_id,
        features=dict(feature_hashes),
        first_seen_at=now,
        last_seen_at=now,
        linked_ids=frozenset({linked_id}) if linked_id else frozenset(),
    )


class FingerprintStore(abc.ABC):
    """Abstract async fingerprint store."""

    def __init__(self, *, history_cap: int = DEFAULT_SCORE_HISTORY_CAP) -> None:
        if history_cap < 1:
            raise ValueError("history_cap must be at least 1")
        self._history_cap = history_cap

    @property
    def history_cap(self) -> int:
        return self._history_cap

    @abc.abstractmethod
    async def lookup_candidates(self, feature_hashes: Mapping[str, str]) -> list[FingerprintRecord]:
        """Return stored records that could match *feature_hashes*."""

    @abc.abstractmethod
    async def get(self, device_id: str) -> FingerprintRecord | None:
        """Return the record for *device_id*, or ``None``."""

    @abc.abstractmethod
    async def create(
        self,
        device_id: str,
        feature_hashes: Mapping[str, str],
        *,
        now: datetime,
        linked_id: str | None = None,
    ) -> FingerprintRecord:
        """Create a record.

        If *device_id* is already taken the existing record is returned with
        *linked_id* merged into it.
        """

    @abc.abstractmethod
    async def _refresh(
        self,
        device_id: str,
        feature_hashes: Mapping[str, str],
        match: MatchResult,
        *,
        now: datetime,
        linked_id: str | None,
    ) -> FingerprintRecord:
        """Apply a KNOWN/VARIANT observation to an existing record."""

    @abc.abstractmethod
    async def delete(self, device_id: str) -> None:
        """Remove *device_id* and everything stored under it. Idempotent."""

    @abc.abstractmethod
    async def count(self) -> int:
        """Number of stored records."""

    async def upsert(
        self,
        device_id: str,
        feature_hashes: Mapping[str, str],
        match: MatchResult,
        *,
        now: datetime,
        linked_id: str | None = None,
    ) -> FingerprintRecord:
        """Create or refresh a record according to *match*.

        NEW_DEVICE creates a record under *device_id*. KNOWN_DEVICE and
        DEVICE_VARIANT refresh the matched record, ``match.device_id``.
        """
        if match.classification is Classification.NEW_DEVICE:
            return await self.create(device_id, feature_hashes, now=now, linked_id=linked_id)
        target = match.device_id or device_id
        return await self._refresh(target, feature_hashes, match, now=now, linked_id=linked_id)

    async def close(self) -> None:
        """Release backend resources. No-op by default."""


def index_entries(
    feature_hashes: Mapping[str, str], index_keys: Iterable[str]
) -> list[tuple[str, str]]:
    """Return the ``(key, hash)`` pairs of *feature_hashes* on indexed keys."""
    return [(k, feature_hashes[k]) for k in index_keys if k in feature_hashes]
