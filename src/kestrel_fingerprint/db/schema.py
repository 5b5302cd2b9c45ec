"""SQLite schema definitions for the durable fingerprint store and velocity log.

Raw signal values are never persisted: the fingerprint tables hold
per-feature hashes only.
"""

from __future__ import annotations

# Current schema version -- increment when adding migrations
SCHEMA_VERSION = 2

_TABLE_NAMES: list[str] = [
    "fingerprints",
    "fingerprint_features",
    "fingerprint_linked_ids",
    "fingerprint_scores",
    "visitor_events",
    "schema_version",
]


def get_all_table_names() -> list[str]:
    """Return the list of all table names managed by this schema."""
    return list(_TABLE_NAMES)


# ---------------------------------------------------------------------------
# Schema version 1: fingerprint store
# ---------------------------------------------------------------------------

SCHEMA_V1_SQL = """
CREATE TABLE IF NOT EXISTS fingerprints (
    device_id TEXT PRIMARY KEY,
    schema_version TEXT NOT NULL,
    first_seen_at TEXT NOT NULL,
    last_seen_at TEXT NOT NULL
);

-- One row per observed feature; raw values never stored
CREATE TABLE IF NOT EXISTS fingerprint_features (
    device_id TEXT NOT NULL REFERENCES fingerprints(device_id) ON DELETE CASCADE,
    feature_key TEXT NOT NULL,
    feature_hash TEXT NOT NULL,
    PRIMARY KEY (device_id, feature_key)
);
CREATE INDEX IF NOT EXISTS idx_features_lookup
    ON fingerprint_features(feature_key, feature_hash);

CREATE TABLE IF NOT EXISTS fingerprint_linked_ids (
    device_id TEXT NOT NULL REFERENCES fingerprints(device_id) ON DELETE CASCADE,
    linked_id TEXT NOT NULL,
    PRIMARY KEY (device_id, linked_id)
);

-- Bounded match score history, oldest evicted on append
CREATE TABLE IF NOT EXISTS fingerprint_scores (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id TEXT NOT NULL REFERENCES fingerprints(device_id) ON DELETE CASCADE,
    observed_at TEXT NOT NULL,
    score REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_scores_device ON fingerprint_scores(device_id, id);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);
"""


# ---------------------------------------------------------------------------
# Schema version 2: velocity event log
# ---------------------------------------------------------------------------

# Timestamps are integer microseconds since the epoch (UTC) so window
# comparisons are exact.
SCHEMA_V2_SQL = """
CREATE TABLE IF NOT EXISTS visitor_events (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    visitor_id TEXT NOT NULL,
    ip TEXT NOT NULL DEFAULT '',
    linked_id TEXT,
    country TEXT,
    url TEXT,
    event_type TEXT,
    ts_us INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_events_visitor ON visitor_events(visitor_id, ts_us);
CREATE INDEX IF NOT EXISTS idx_events_ip ON visitor_events(ip);
CREATE INDEX IF NOT EXISTS idx_events_linked ON visitor_events(linked_id, ts_us);
CREATE INDEX IF NOT EXISTS idx_events_ts ON visitor_events(ts_us);
"""


async def create_all_tables(db) -> None:
    """Apply the full schema to the database.

    Convenience wrapper for tests and fresh databases. For production
    use, prefer ``apply_migrations()`` from the migrations module.
    """
    await db.executescript(SCHEMA_V1_SQL)
    await db.executescript(SCHEMA_V2_SQL)
    await db.commit()
