"""Confidence that a fingerprint has enough signal to be trusted."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from kestrel_fingerprint.fingerprint.canonical import NULL, CanonicalVector
from kestrel_fingerprint.fingerprint.schema import FeatureWeights

CONFIDENCE_REVISION = "v1.0"


@dataclass(frozen=True)
class Confidence:
    score: float
    revision: str = CONFIDENCE_REVISION


def score_confidence(
    vector: CanonicalVector,
    expected_keys: Iterable[str],
    weights: FeatureWeights | None = None,
) -> float:
    """Return the weighted fraction of *expected_keys* present in *vector*.

    When the expected keys carry no weight at all the flat fraction of
    present keys is returned instead. An empty expected set scores 0.0.
    The result is always in [0, 1].
    """
    expected = list(dict.fromkeys(expected_keys))
    if not expected:
        return 0.0

    present = [k for k in expected if vector.get(k) is not NULL]
    weights = weights if weights is not None else FeatureWeights.default()

    total = weights.total(expected)
    if total <= 0.0:
        return len(present) / len(expected)

    return min(1.0, weights.total(present) / total)
