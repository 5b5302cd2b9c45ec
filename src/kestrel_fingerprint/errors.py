"""Error taxonomy for the fingerprint engine.

Missing signals and collector timeouts are deliberately absent: they are
not exceptions, they surface as NULL fields in the canonical vector and a
lower confidence score. Only the conditions below cross a component
boundary as an exception.
"""

from __future__ import annotations


class FingerprintError(Exception):
    """Base class for all engine errors."""


class StoreUnavailable(FingerprintError):
    """The persistence backend could not serve a lookup or write.

    Fatal to the classify/upsert step. Callers must surface this distinctly
    and never fall back to creating a new device record.
    """


class MalformedEvent(FingerprintError):
    """A visitor event is missing a required field and was not recorded."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class ConfigurationError(FingerprintError):
    """Invalid weight, threshold or window configuration. Raised at startup."""
