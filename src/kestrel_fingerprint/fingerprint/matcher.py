"""Weighted similarity matching between an incoming fingerprint and stored ones.

The score is the weight of keys whose hashes agree, divided by the weight
of every key observed on either side:

    score = sum(w[k] for k in agree) / sum(w[k] for k in incoming | stored)

A key observed on only one side counts against the match, a key observed
on neither side counts for nothing. The score is classified into three
bands, each inclusive at its lower bound:

- ``score >= high``        -> KNOWN_DEVICE
- ``low <= score < high``  -> DEVICE_VARIANT
- ``score < low``          -> NEW_DEVICE
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from kestrel_fingerprint.errors import ConfigurationError
from kestrel_fingerprint.fingerprint.schema import FeatureWeights

if TYPE_CHECKING:
    from kestrel_fingerprint.store.base import FingerprintRecord

# Threshold comparisons are made with this absolute tolerance so that an
# exact fractional boundary (17/20 against 0.85) lands in the upper band.
SCORE_TOLERANCE = 1e-9

DEFAULT_HIGH_THRESHOLD = 0.85
DEFAULT_LOW_THRESHOLD = 0.60


class Classification(str, Enum):
    NEW_DEVICE = "new_device"
    DEVICE_VARIANT = "device_variant"
    KNOWN_DEVICE = "known_device"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Thresholds:
    """Classification band boundaries.

    Raises ``ConfigurationError`` on construction if either value falls
    outside [0, 1] or ``low > high``.
    """

    high: float = DEFAULT_HIGH_THRESHOLD
    low: float = DEFAULT_LOW_THRESHOLD

    def __post_init__(self) -> None:
        for name, value in (("high", self.high), ("low", self.low)):
            if math.isnan(value) or not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"Threshold {name} must be in [0, 1], got {value!r}")
        if self.low > self.high:
            raise ConfigurationError(
                f"Low threshold {self.low} must not exceed high threshold {self.high}"
            )

    def classify(self, score: float) -> Classification:
        if _at_least(score, self.high):
            return Classification.KNOWN_DEVICE
        if _at_least(score, self.low):
            return Classification.DEVICE_VARIANT
        return Classification.NEW_DEVICE


def _at_least(score: float, bound: float) -> bool:
    return score >= bound or math.isclose(score, bound, rel_tol=0.0, abs_tol=SCORE_TOLERANCE)


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MatchResult:
    """Outcome of matching one incoming fingerprint.

    Parameters
    ----------
    classification:
        Band the score falls into.
    score:
        Weighted agreement in [0, 1].
    matched_keys:
        Keys whose hashes agree on both sides.
    device_id:
        The stored device this result refers to. ``None`` for NEW_DEVICE.
    """

    classification: Classification
    score: float = 0.0
    matched_keys: frozenset[str] = field(default_factory=frozenset)
    device_id: str | None = None

    @classmethod
    def new_device(cls) -> MatchResult:
        return cls(classification=Classification.NEW_DEVICE)

    @property
    def is_match(self) -> bool:
        return self.classification is not Classification.NEW_DEVICE


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def similarity(
    incoming: Mapping[str, str],
    stored: Mapping[str, str],
    weights: FeatureWeights,
) -> tuple[float, frozenset[str]]:
    """Return ``(score, matched_keys)`` for two feature-hash mappings.

    With no key observed on both sides the score is 0.0 regardless of
    weights.
    """
    overlap = incoming.keys() & stored.keys()
    if not overlap:
        return 0.0, frozenset()

    matched = frozenset(k for k in overlap if incoming[k] == stored[k])
    denominator = weights.total(incoming.keys() | stored.keys())
    if denominator <= 0.0:
        return 0.0, matched

    score = weights.total(matched) / denominator
    return min(1.0, max(0.0, score)), matched


def match(
    incoming: Mapping[str, str],
    stored: FingerprintRecord,
    weights: FeatureWeights,
    thresholds: Thresholds,
) -> MatchResult:
    """Score *incoming* feature hashes against one stored record."""
    score, matched = similarity(incoming, stored.features, weights)
    classification = thresholds.classify(score)
    if not matched:
        classification = Classification.NEW_DEVICE
    if classification is Classification.NEW_DEVICE:
        return MatchResult(classification=classification, score=score, matched_keys=matched)
    return MatchResult(
        classification=classification,
        score=score,
        matched_keys=matched,
        device_id=stored.device_id,
    )


def best_match(
    incoming: Mapping[str, str],
    candidates: Iterable[FingerprintRecord],
    weights: FeatureWeights,
    thresholds: Thresholds,
) -> MatchResult:
    """Return the best-scoring match among *candidates*.

    Ties on score go to the most recently seen record, then to the
    lexicographically smallest device id. No candidates, or no candidate
    above the low threshold, yields NEW_DEVICE.
    """
    best: tuple[MatchResult, FingerprintRecord] | None = None
    for record in candidates:
        result = match(incoming, record, weights, thresholds)
        if not result.is_match:
            continue
        if best is None or _outranks(result, record, *best):
            best = (result, record)

    if best is None:
        return MatchResult.new_device()
    return best[0]


def _outranks(
    result: MatchResult,
    record: FingerprintRecord,
    best_result: MatchResult,
    best_record: FingerprintRecord,
) -> bool:
    if result.score != best_result.score:
        return result.score > best_result.score
    if record.last_seen_at != best_record.last_seen_at:
        return record.last_seen_at > best_record.last_seen_at
    return record.device_id < best_record.device_id
