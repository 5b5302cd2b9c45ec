"""Integration tests for the service entry point (__main__.py).

Every subsystem is mocked so the test exercises the wiring and
startup/shutdown orchestration without a real database, network access
or a running uvicorn server.
"""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from kestrel_fingerprint.config import Settings


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sqlite_settings(tmp_path: Path) -> Settings:
    return Settings(
        service={"data_dir": str(tmp_path / "data"), "port": 8601},
        store={"backend": "sqlite", "path": "kestrel.db"},
    )


@pytest.fixture()
def mock_subsystems(sqlite_settings: Settings) -> dict[str, Any]:
    """Patch all subsystems and return the mocks for assertion."""
    mocks: dict[str, Any] = {}

    mocks["load_config"] = MagicMock(return_value=sqlite_settings)

    mock_db = AsyncMock()
    mock_db.close = AsyncMock()
    mocks["db"] = mock_db
    mocks["open_db"] = AsyncMock(return_value=mock_db)
    mocks["run_migrations"] = AsyncMock()

    mocks["geolocation"] = None
    mocks["create_geolocation"] = MagicMock(return_value=None)

    mock_engine = MagicMock()
    mocks["engine"] = mock_engine
    mocks["create_engine"] = MagicMock(return_value=mock_engine)

    mock_compaction = MagicMock()
    mock_compaction.start = AsyncMock()
    mock_compaction.stop = AsyncMock()
    mocks["compaction"] = mock_compaction
    mocks["create_compaction"] = MagicMock(return_value=mock_compaction)

    mock_app = MagicMock()
    mock_app.dependency_overrides = {}
    mocks["app"] = mock_app
    mocks["create_app"] = MagicMock(return_value=mock_app)

    mock_server = MagicMock()
    mock_server.serve = AsyncMock(side_effect=asyncio.CancelledError)
    mocks["uvicorn_server"] = mock_server
    mocks["uvicorn_server_cls"] = MagicMock(return_value=mock_server)

    return mocks


@pytest.fixture()
def patched(mock_subsystems: dict[str, Any]):
    """Apply all subsystem patches for the duration of a test."""
    seams = (
        "load_config",
        "open_db",
        "run_migrations",
        "create_geolocation",
        "create_engine",
        "create_compaction",
        "create_app",
    )
    with contextlib.ExitStack() as stack:
        for name in seams:
            stack.enter_context(
                patch(f"kestrel_fingerprint.__main__.{name}", mock_subsystems[name])
            )
        stack.enter_context(
            patch(
                "kestrel_fingerprint.__main__.uvicorn.Server",
                mock_subsystems["uvicorn_server_cls"],
            )
        )
        yield


# ---------------------------------------------------------------------------
# Startup tests
# ---------------------------------------------------------------------------


class TestEntryPointStartup:
    """Service startup wires all components correctly."""

    async def test_loads_config_from_cli_arg(self, mock_subsystems, patched) -> None:
        from kestrel_fingerprint.__main__ import run_service

        await run_service(config_path="/etc/kestrel.yaml")

        mock_subsystems["load_config"].assert_called_once_with("/etc/kestrel.yaml")

    async def test_opens_database_and_runs_migrations(
        self, mock_subsystems, patched, sqlite_settings
    ) -> None:
        from kestrel_fingerprint.__main__ import run_service

        await run_service()

        expected = Path(sqlite_settings.service.data_dir) / "kestrel.db"
        mock_subsystems["open_db"].assert_called_once_with(expected)
        mock_subsystems["run_migrations"].assert_called_once_with(mock_subsystems["db"])
        mock_subsystems["create_engine"].assert_called_once_with(
            sqlite_settings, mock_subsystems["db"], None
        )

    async def test_memory_backend_skips_database(self, mock_subsystems, patched) -> None:
        from kestrel_fingerprint.__main__ import run_service

        mock_subsystems["load_config"].return_value = Settings()

        await run_service()

        mock_subsystems["open_db"].assert_not_called()
        mock_subsystems["run_migrations"].assert_not_called()
        args = mock_subsystems["create_engine"].call_args.args
        assert args[1] is None

    async def test_wires_dependency_overrides(self, mock_subsystems, patched) -> None:
        from kestrel_fingerprint.__main__ import run_service
        from kestrel_fingerprint.api.deps import get_compaction, get_engine, get_settings

        await run_service()

        overrides = mock_subsystems["app"].dependency_overrides
        assert await overrides[get_engine]() is mock_subsystems["engine"]
        assert await overrides[get_compaction]() is mock_subsystems["compaction"]
        assert isinstance(await overrides[get_settings](), Settings)

    async def test_starts_compaction(self, mock_subsystems, patched) -> None:
        from kestrel_fingerprint.__main__ import run_service

        await run_service()

        mock_subsystems["compaction"].start.assert_called_once()

    async def test_cli_port_overrides_config(self, mock_subsystems, patched) -> None:
        from kestrel_fingerprint.__main__ import run_service

        with patch("kestrel_fingerprint.__main__.uvicorn.Config") as config_cls:
            await run_service(host="0.0.0.0", port=9999)

        kwargs = config_cls.call_args.kwargs
        assert kwargs["host"] == "0.0.0.0"
        assert kwargs["port"] == 9999

    async def test_config_port_used_by_default(self, mock_subsystems, patched) -> None:
        from kestrel_fingerprint.__main__ import run_service

        with patch("kestrel_fingerprint.__main__.uvicorn.Config") as config_cls:
            await run_service()

        assert config_cls.call_args.kwargs["port"] == 8601


# ---------------------------------------------------------------------------
# Shutdown tests
# ---------------------------------------------------------------------------


class TestEntryPointShutdown:
    async def test_stops_compaction_and_closes_db(self, mock_subsystems, patched) -> None:
        from kestrel_fingerprint.__main__ import run_service

        await run_service()

        mock_subsystems["compaction"].stop.assert_called_once()
        mock_subsystems["db"].close.assert_called_once()

    async def test_cleanup_runs_when_server_fails(self, mock_subsystems, patched) -> None:
        from kestrel_fingerprint.__main__ import run_service

        mock_subsystems["uvicorn_server"].serve.side_effect = RuntimeError("bind failed")

        with pytest.raises(RuntimeError):
            await run_service()

        mock_subsystems["compaction"].stop.assert_called_once()
        mock_subsystems["db"].close.assert_called_once()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class TestParseArgs:
    def test_defaults(self) -> None:
        from kestrel_fingerprint.__main__ import parse_args

        args = parse_args([])
        assert args.config is None
        assert args.host is None
        assert args.port is None

    def test_all_flags(self) -> None:
        from kestrel_fingerprint.__main__ import parse_args

        args = parse_args(["--config", "/tmp/k.yaml", "--host", "0.0.0.0", "--port", "8700"])
        assert args.config == "/tmp/k.yaml"
        assert args.host == "0.0.0.0"
        assert args.port == 8700


class TestMain:
    def test_configuration_error_exits_2(self) -> None:
        from kestrel_fingerprint.__main__ import main
        from kestrel_fingerprint.errors import ConfigurationError

        with patch("kestrel_fingerprint.__main__.parse_args") as parse, patch(
            "kestrel_fingerprint.__main__.load_config",
            side_effect=ConfigurationError("bad secret"),
        ):
            parse.return_value = MagicMock(config=None, host=None, port=None)
            with pytest.raises(SystemExit) as excinfo:
                main()
        assert excinfo.value.code == 2
