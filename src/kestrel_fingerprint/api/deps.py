"""FastAPI dependency injection providers."""
from __future__ import annotations

from typing import Any


async def get_engine() -> Any:
    """Return the FingerprintEngine instance from app state.

    In production, wired by the entry point. In tests, overridden with an
    engine over in-memory backends.
    """
    raise NotImplementedError("Must be overridden via app.state or dependency_overrides")


async def get_settings() -> Any:
    """Return the loaded Settings model.

    In production, loaded at startup. In tests, overridden.
    """
    raise NotImplementedError("Must be overridden via app.state or dependency_overrides")


async def get_compaction() -> Any:
    """Return the CompactionScheduler, or ``None`` when compaction is not scheduled.

    In production, created at startup. In tests, overridden.
    """
    raise NotImplementedError("Must be overridden via app.state or dependency_overrides")
