"""Kestrel fingerprint service -- entry point.

Usage::

    python -m kestrel_fingerprint [--config PATH] [--host HOST] [--port PORT]

Startup sequence:
    1. Parse CLI arguments
    2. Load and validate configuration (YAML, env overrides)
    3. Open SQLite database and run migrations (sqlite backend only)
    4. Build the fingerprint store, velocity index and geolocation service
    5. Create the FastAPI application with dependency injection
    6. Start velocity compaction
    7. Start the uvicorn server
    8. On shutdown signal: stop compaction, close HTTP client and database
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import timedelta
from pathlib import Path
from typing import Any

import httpx
import uvicorn

from kestrel_fingerprint.app import create_app
from kestrel_fingerprint.errors import ConfigurationError

logger = logging.getLogger("kestrel_fingerprint")


# ---------------------------------------------------------------------------
# Integration seams -- thin wrappers around real subsystem constructors.
# These are module-level names so tests can patch them individually.
# ---------------------------------------------------------------------------


def load_config(config_path: str | None) -> Any:
    """Load and validate settings. Raises ``ConfigurationError``."""
    from kestrel_fingerprint.config import load_settings

    path = Path(config_path) if config_path else None
    return load_settings(config_path=path)


async def open_db(db_path: Path) -> Any:
    """Open the SQLite database."""
    import aiosqlite

    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(db_path))
    db.row_factory = aiosqlite.Row
    return db


async def run_migrations(db: Any) -> None:
    """Apply pending database migrations."""
    from kestrel_fingerprint.db.migrations import apply_migrations

    await apply_migrations(db)


def create_geolocation(settings: Any, client: httpx.AsyncClient) -> Any:
    """Build the geolocation service, or ``None`` when disabled."""
    if not settings.geolocation.enabled:
        return None

    from kestrel_fingerprint.geo.providers import build_providers
    from kestrel_fingerprint.geo.service import GeolocationService

    geo = settings.geolocation
    providers = build_providers(
        geo.providers,
        api_keys=geo.api_keys,
        client=client,
        timeout=geo.timeout_seconds,
    )
    return GeolocationService(
        providers,
        timeout=geo.timeout_seconds,
        cache_ttl=geo.cache_ttl_seconds,
    )


def create_engine(settings: Any, db: Any, geolocation: Any = None) -> Any:
    """Build the fingerprint engine over the configured backends.

    *db* is ``None`` for the in-memory backend.
    """
    from kestrel_fingerprint.engine import FingerprintEngine

    matching = settings.matching
    windows = settings.velocity_windows()
    if db is None:
        from kestrel_fingerprint.store.memory import InMemoryFingerprintStore
        from kestrel_fingerprint.velocity.index import InMemoryVelocityIndex

        store = InMemoryFingerprintStore(
            index_keys=matching.index_keys, history_cap=matching.score_history_cap
        )
        velocity = InMemoryVelocityIndex(windows=windows, max_events=settings.velocity.max_events)
    else:
        from kestrel_fingerprint.store.sqlite import SQLiteFingerprintStore
        from kestrel_fingerprint.velocity.sqlite import SQLiteVelocityIndex

        store = SQLiteFingerprintStore(
            db, index_keys=matching.index_keys, history_cap=matching.score_history_cap
        )
        velocity = SQLiteVelocityIndex(db, windows=windows, max_events=settings.velocity.max_events)

    return FingerprintEngine(
        store=store,
        velocity=velocity,
        secret=settings.identity.secret,
        weights=settings.feature_weights(),
        thresholds=settings.thresholds(),
        risk_config=settings.risk_config(),
        geolocation=geolocation,
        retention=timedelta(seconds=settings.velocity.retention_seconds),
    )


def create_compaction(settings: Any, engine: Any) -> Any:
    """Build the periodic velocity compaction scheduler."""
    from kestrel_fingerprint.velocity.compaction import CompactionScheduler

    return CompactionScheduler(
        engine.velocity,
        retention=timedelta(seconds=settings.velocity.retention_seconds),
        interval_seconds=settings.velocity.compaction_interval_seconds,
    )


# ---------------------------------------------------------------------------


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Parameters
    ----------
    argv:
        Argument list.  Defaults to ``sys.argv[1:]`` when ``None``.
    """
    parser = argparse.ArgumentParser(
        prog="kestrel_fingerprint",
        description="Kestrel device fingerprint and risk scoring service",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to YAML configuration file",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Bind address (default: service.host from config)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port for the API server (default: service.port from config)",
    )
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Main run coroutine
# ---------------------------------------------------------------------------


async def run_service(
    config_path: str | None = None,
    host: str | None = None,
    port: int | None = None,
) -> None:
    """Start the service and run until cancelled.

    This is the top-level coroutine that wires all subsystems together.
    It is designed to be called from ``main()`` or directly in tests.
    """
    # 1. Load config
    settings = load_config(config_path)
    host = host or settings.service.host
    port = port or settings.service.port
    logging.getLogger().setLevel(settings.service.log_level.upper())

    # 2. Open database (durable backend only)
    db = None
    if settings.store.backend == "sqlite":
        db_path = Path(settings.store.path)
        if not db_path.is_absolute():
            db_path = Path(settings.service.data_dir) / db_path
        db = await open_db(db_path)

        # 3. Run migrations
        await run_migrations(db)

    # 4. Build engine
    http_client = httpx.AsyncClient()
    geolocation = create_geolocation(settings, http_client)
    engine = create_engine(settings, db, geolocation)
    compaction = create_compaction(settings, engine)

    # 5. Create FastAPI app
    app = create_app(settings)

    # 5b. Wire up dependency overrides for production
    from kestrel_fingerprint.api.deps import (
        get_compaction as _get_compaction_dep,
        get_engine as _get_engine_dep,
        get_settings as _get_settings_dep,
    )

    async def _prod_get_engine():
        return engine

    async def _prod_get_settings():
        return settings

    async def _prod_get_compaction():
        return compaction

    app.dependency_overrides[_get_engine_dep] = _prod_get_engine
    app.dependency_overrides[_get_settings_dep] = _prod_get_settings
    app.dependency_overrides[_get_compaction_dep] = _prod_get_compaction

    # 6. Start compaction
    await compaction.start()

    # 7. Configure and start uvicorn
    uvicorn_config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_level=settings.service.log_level.lower(),
    )
    server = uvicorn.Server(uvicorn_config)

    logger.info(
        "Kestrel fingerprint service starting on %s:%d (store=%s, geolocation=%s)",
        host,
        port,
        settings.store.backend,
        "on" if geolocation is not None else "off",
    )

    try:
        await server.serve()
    except asyncio.CancelledError:
        logger.info("Shutdown signal received -- stopping service")
    finally:
        logger.info("Stopping velocity compaction...")
        await compaction.stop()

        await http_client.aclose()

        if db is not None:
            logger.info("Closing database...")
            await db.close()

        logger.info("Service shutdown complete")


# ---------------------------------------------------------------------------
# Script entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Parse CLI args and run the service."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    args = parse_args()

    try:
        asyncio.run(run_service(config_path=args.config, host=args.host, port=args.port))
    except ConfigurationError as exc:
        logger.error("Invalid configuration: %s", exc)
        sys.exit(2)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
