"""Canonical feature vectors from raw signal bags.

A signal bag is whatever the collectors managed to report: sparse,
unordered, possibly with junk values. ``canonicalize`` turns it into a
``CanonicalVector`` whose order is fixed by the schema and whose values
are type-tagged normalized strings, so that the same observations always
serialize to the same bytes.

Value tags:

- ``s:`` string, trimmed with internal whitespace collapsed
- ``n:`` number, passed through unrounded (``repr`` for floats)
- ``b:`` boolean
- ``j:`` list or record, as compact JSON with sorted record keys

Fields that are absent, explicitly ``None``, or fail to normalize become
the ``NULL`` sentinel. ``NULL`` is distinct from every observed value,
including ``""``, ``0``, ``False`` and ``[]``.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from kestrel_fingerprint.fingerprint.schema import SCHEMA_VERSION, SIGNAL_SCHEMA

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
_MAX_DEPTH = 32


class _Null:
    """Marker for a feature that was not observed."""

    _instance: _Null | None = None

    def __new__(cls) -> _Null:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NULL"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self) -> str:
        return "NULL"


NULL = _Null()

CanonicalValue = str | _Null


# ---------------------------------------------------------------------------
# Normalizers
# ---------------------------------------------------------------------------

def normalize_string(value: str) -> str:
    """Trim and collapse runs of whitespace into a single space."""
    return _WHITESPACE.sub(" ", value.strip())


def _composite(value: Any, depth: int) -> Any:
    """Convert a nested list/record into a JSON-ready canonical structure."""
    if depth > _MAX_DEPTH:
        raise ValueError("composite value nested too deeply")

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return normalize_string(value)
    if isinstance(value, Mapping):
        out: dict[str, Any] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"record key must be a string, got {type(key).__name__}")
            out[key] = _composite(item, depth + 1)
        return out
    if isinstance(value, (list, tuple)):
        return [_composite(item, depth + 1) for item in value]
    if isinstance(value, (set, frozenset)):
        # Unordered input: order members by their own canonical encoding
        members = [_composite(item, depth + 1) for item in value]
        return sorted(members, key=_dump)
    raise TypeError(f"unsupported value type {type(value).__name__}")


def _dump(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def normalize_value(value: Any) -> str:
    """Normalize a single observed value into its tagged canonical string.

    Raises
    ------
    TypeError, ValueError:
        If the value cannot be represented canonically.
    """
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return "b:true" if value else "b:false"
    if isinstance(value, int):
        return f"n:{value}"
    if isinstance(value, float):
        return f"n:{value!r}"
    if isinstance(value, str):
        return "s:" + normalize_string(value)
    if isinstance(value, (Mapping, list, tuple, set, frozenset)):
        return "j:" + _dump(_composite(value, 0))
    raise TypeError(f"unsupported value type {type(value).__name__}")


# ---------------------------------------------------------------------------
# Canonical vector
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CanonicalVector:
    """Ordered, schema-keyed, normalized feature vector."""

    schema_version: str
    entries: tuple[tuple[str, CanonicalValue], ...]

    def __iter__(self) -> Iterator[tuple[str, CanonicalValue]]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def keys(self) -> list[str]:
        return [key for key, _ in self.entries]

    def get(self, key: str) -> CanonicalValue:
        """Return the normalized value for *key*, or ``NULL``."""
        for entry_key, value in self.entries:
            if entry_key == key:
                return value
        return NULL

    def present(self) -> dict[str, str]:
        """Return the non-NULL entries as a key -> value dict, in schema order."""
        return {key: value for key, value in self.entries if value is not NULL}

    @property
    def present_count(self) -> int:
        return sum(1 for _, value in self.entries if value is not NULL)

    def serialize(self) -> str:
        """Return the unambiguous length-prefixed encoding of this vector.

        Each entry is ``<len>:<key>`` followed by ``<len>:<value>`` or ``~``
        for NULL. A present value always starts with a digit, so NULL can
        never collide with an observed value and no separator escaping is
        needed.
        """
        parts = [f"v{len(self.schema_version)}:{self.schema_version}|"]
        for key, value in self.entries:
            parts.append(f"{len(key)}:{key}")
            if value is NULL:
                parts.append("~")
            else:
                parts.append(f"{len(value)}:{value}")
        return "".join(parts)

    def to_bytes(self) -> bytes:
        return self.serialize().encode("utf-8")


def canonicalize(
    bag: Mapping[str, Any] | None,
    schema: tuple[str, ...] = SIGNAL_SCHEMA,
    schema_version: str = SCHEMA_VERSION,
) -> CanonicalVector:
    """Build the canonical vector for *bag* in *schema* order.

    Never raises for individual fields: a value that cannot be normalized
    degrades to ``NULL`` and the rest of the vector is still produced.
    """
    source: Mapping[str, Any] = bag if isinstance(bag, Mapping) else {}
    entries: list[tuple[str, CanonicalValue]] = []

    for key in schema:
        raw = source.get(key)
        if raw is None:
            entries.append((key, NULL))
            continue
        try:
            entries.append((key, normalize_value(raw)))
        except (TypeError, ValueError, RecursionError) as exc:
            logger.debug("Dropping signal %s: %s", key, exc)
            entries.append((key, NULL))

    unknown = [key for key in source if key not in schema]
    if unknown:
        logger.debug("Ignoring %d signals outside schema v%s", len(unknown), schema_version)

    return CanonicalVector(schema_version=schema_version, entries=tuple(entries))
