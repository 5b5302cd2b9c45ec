"""Schema version tracking and migration runner.

Checks the current schema version in the database and applies any pending
migrations in order. Version 0 means no schema exists yet.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

import aiosqlite

from kestrel_fingerprint.db.schema import SCHEMA_V1_SQL, SCHEMA_V2_SQL, SCHEMA_VERSION

logger = logging.getLogger(__name__)


async def _get_current_version(db: aiosqlite.Connection) -> int:
    """Return the current schema version, or 0 if the table does not exist."""
    cursor = await db.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
    )
    row = await cursor.fetchone()
    if row is None:
        return 0
    cursor = await db.execute("SELECT MAX(version) FROM schema_version")
    row = await cursor.fetchone()
    return row[0] if row and row[0] is not None else 0


async def _record_version(db: aiosqlite.Connection, version: int) -> None:
    now = datetime.now(timezone.utc).isoformat()
    await db.execute(
        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
        (version, now),
    )
    await db.commit()


async def _apply_v1(db: aiosqlite.Connection) -> None:
    """V1: fingerprint tables, features, linked ids and score history."""
    await db.executescript(SCHEMA_V1_SQL)
    await _record_version(db, 1)


async def _apply_v2(db: aiosqlite.Connection) -> None:
    """V2: visitor event log for velocity queries."""
    await db.executescript(SCHEMA_V2_SQL)
    await _record_version(db, 2)


# Ordered list of migration functions. Index 0 = migration to version 1.
_MIGRATIONS: list[tuple[int, Callable[[aiosqlite.Connection], Awaitable[None]]]] = [
    (1, _apply_v1),
    (2, _apply_v2),
]


async def get_schema_version(db: aiosqlite.Connection) -> int:
    return await _get_current_version(db)


async def apply_migrations(db: aiosqlite.Connection) -> None:
    """Apply all pending migrations to bring the database to the current version.

    Safe to call multiple times -- skips already-applied migrations.
    """
    current = await _get_current_version(db)

    if current >= SCHEMA_VERSION:
        return

    for target_version, migrate_fn in _MIGRATIONS:
        if current < target_version:
            logger.info("Applying schema migration v%d", target_version)
            await migrate_fn(db)
            current = target_version
