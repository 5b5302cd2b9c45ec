"""Signal schema and entropy weights.

The schema is the fixed, ordered enumeration of feature keys a collector
may report. Its order defines the canonical vector order, so appending a
key (or reordering) is a schema change and must bump ``SCHEMA_VERSION``:
identifiers derived under different versions are not comparable.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Iterator, Mapping
from types import MappingProxyType

from kestrel_fingerprint.errors import ConfigurationError

SCHEMA_VERSION = "2"

# ---------------------------------------------------------------------------
# Feature keys, in canonical order
# ---------------------------------------------------------------------------

# Raw device attributes reported by the browser collector
DEVICE_KEYS: tuple[str, ...] = (
    "plugins",
    "screen_resolution",
    "screen_frame",
    "audio",
    "session_storage",
    "font_preferences",
    "forced_colors",
    "touch_support",
    "dom_blockers",
    "open_database",
    "device_memory",
    "languages",
    "local_storage",
    "math_ml",
    "inverted_colors",
    "os_cpu",
    "emoji",
    "date_time_locale",
    "math",
    "timezone",
    "webgl_basics",
    "webgl_extensions",
    "private_click_measurement",
    "vendor_flavors",
    "architecture",
    "audio_base_latency",
    "contrast",
    "platform",
    "fonts",
    "vendor",
    "cpu_class",
    "indexed_db",
    "cookies_enabled",
    "pdf_viewer_enabled",
    "hdr",
    "canvas",
    "hardware_concurrency",
    "color_depth",
    "reduced_motion",
    "color_gamut",
    "monochrome",
)

# Derived server-side from the request (headers, TLS ClientHello)
NETWORK_KEYS: tuple[str, ...] = (
    "user_agent",
    "accept_language",
    "header_hash",
    "tls_ja3",
)

SIGNAL_SCHEMA: tuple[str, ...] = DEVICE_KEYS + NETWORK_KEYS


# ---------------------------------------------------------------------------
# Default weights (stability x uniqueness, each in [0, 1])
# ---------------------------------------------------------------------------

DEFAULT_WEIGHTS: dict[str, float] = {
    "plugins": 0.50,
    "screen_resolution": 0.55,
    "screen_frame": 0.30,
    "audio": 0.85,
    "session_storage": 0.05,
    "font_preferences": 0.70,
    "forced_colors": 0.05,
    "touch_support": 0.30,
    "dom_blockers": 0.20,
    "open_database": 0.05,
    "device_memory": 0.30,
    "languages": 0.45,
    "local_storage": 0.05,
    "math_ml": 0.60,
    "inverted_colors": 0.05,
    "os_cpu": 0.30,
    "emoji": 0.65,
    "date_time_locale": 0.35,
    "math": 0.60,
    "timezone": 0.50,
    "webgl_basics": 0.85,
    "webgl_extensions": 0.90,
    "private_click_measurement": 0.10,
    "vendor_flavors": 0.25,
    "architecture": 0.30,
    "audio_base_latency": 0.40,
    "contrast": 0.05,
    "platform": 0.35,
    "fonts": 0.90,
    "vendor": 0.20,
    "cpu_class": 0.10,
    "indexed_db": 0.05,
    "cookies_enabled": 0.05,
    "pdf_viewer_enabled": 0.10,
    "hdr": 0.15,
    "canvas": 0.95,
    "hardware_concurrency": 0.40,
    "color_depth": 0.20,
    "reduced_motion": 0.10,
    "color_gamut": 0.20,
    "monochrome": 0.05,
    "user_agent": 0.60,
    "accept_language": 0.35,
    "header_hash": 0.45,
    "tls_ja3": 0.50,
}

# High-entropy keys used to shard candidate lookup in the stores
DEFAULT_INDEX_KEYS: tuple[str, ...] = (
    "canvas",
    "webgl_basics",
    "webgl_extensions",
    "audio",
    "fonts",
    "math",
)


class FeatureWeights(Mapping[str, float]):
    """Immutable feature-key -> weight mapping.

    Keys without a configured weight weigh ``0.0``: they never contribute to
    a match score or to confidence.
    """

    def __init__(self, weights: Mapping[str, float]) -> None:
        for key, value in weights.items():
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                raise ConfigurationError(f"Weight for {key!r} must be a number, got {value!r}")
            if math.isnan(value) or value < 0.0 or value > 1.0:
                raise ConfigurationError(f"Weight for {key!r} must be in [0, 1], got {value!r}")
        self._weights = MappingProxyType({k: float(v) for k, v in weights.items()})

    @classmethod
    def default(cls) -> FeatureWeights:
        return cls(DEFAULT_WEIGHTS)

    @classmethod
    def with_overrides(cls, overrides: Mapping[str, float] | None) -> FeatureWeights:
        """Return the default weights with *overrides* applied on top."""
        merged = dict(DEFAULT_WEIGHTS)
        merged.update(overrides or {})
        return cls(merged)

    def weight(self, key: str) -> float:
        return self._weights.get(key, 0.0)

    def total(self, keys: Iterable[str]) -> float:
        return sum(self.weight(k) for k in keys)

    def __getitem__(self, key: str) -> float:
        return self._weights[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._weights)

    def __len__(self) -> int:
        return len(self._weights)

    def __repr__(self) -> str:
        return f"FeatureWeights({dict(self._weights)!r})"
