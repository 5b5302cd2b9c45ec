"""Device identity derivation from a canonical vector.

The device identifier is a keyed hash of the full serialized vector, so it
cannot be recomputed from the observed signals without the secret. The
per-feature hashes are what gets stored and compared; raw signal values
never leave this module.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field

from kestrel_fingerprint.errors import ConfigurationError
from kestrel_fingerprint.fingerprint.canonical import NULL, CanonicalVector

MIN_SECRET_BYTES = 16
VISITOR_ID_LENGTH = 20


@dataclass(frozen=True)
class Identity:
    """Derived identity of one canonical vector.

    Parameters
    ----------
    device_id:
        Hex HMAC-SHA256 of the serialized vector.
    feature_hashes:
        Per-feature SHA-256 hex digests, for non-NULL keys only.
    """

    device_id: str
    feature_hashes: dict[str, str] = field(default_factory=dict)

    @property
    def visitor_id(self) -> str:
        return visitor_id(self.device_id)


def secret_bytes(secret: str | bytes) -> bytes:
    """Validate and return the identity secret as bytes."""
    raw = secret.encode("utf-8") if isinstance(secret, str) else bytes(secret)
    if len(raw) < MIN_SECRET_BYTES:
        raise ConfigurationError(
            f"Identity secret must be at least {MIN_SECRET_BYTES} bytes, got {len(raw)}"
        )
    return raw


def feature_hash(value: str) -> str:
    """SHA-256 hex digest of one tagged normalized value."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def derive_identity(vector: CanonicalVector, secret: str | bytes) -> Identity:
    """Derive the device identifier and per-feature hashes for *vector*."""
    key = secret_bytes(secret)
    device_id = hmac.new(key, vector.to_bytes(), hashlib.sha256).hexdigest()
    hashes = {k: feature_hash(v) for k, v in vector.entries if v is not NULL}
    return Identity(device_id=device_id, feature_hashes=hashes)


def visitor_id(device_id: str) -> str:
    """Short display form of a device identifier.

    Only for presentation; comparisons always use the full identifier.
    """
    return device_id[:VISITOR_ID_LENGTH]
