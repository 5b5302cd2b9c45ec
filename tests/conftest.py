"""Shared test fixtures for the Kestrel fingerprint tests."""

import pathlib
from datetime import datetime, timezone

import pytest

REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]

TEST_SECRET = "unit-test-secret-0123456789"


@pytest.fixture
def repo_root() -> pathlib.Path:
    return REPO_ROOT


@pytest.fixture
def secret() -> str:
    return TEST_SECRET


@pytest.fixture
def t0() -> datetime:
    """A fixed, timezone-aware reference instant."""
    return datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def signal_bag() -> dict:
    """A fully populated device signal bag, as a desktop Chrome would report it."""
    return {
        "plugins": [
            {"name": "PDF Viewer", "description": "Portable Document Format"},
            {"name": "Chrome PDF Viewer", "description": "Portable Document Format"},
        ],
        "screen_resolution": [2560, 1440],
        "screen_frame": [0, 0, 40, 0],
        "audio": 124.04347527516074,
        "session_storage": True,
        "font_preferences": {"default": 149.3125, "apple": 149.3125, "serif": 149.3125},
        "forced_colors": False,
        "touch_support": {"maxTouchPoints": 0, "touchEvent": False, "touchStart": False},
        "dom_blockers": [],
        "open_database": False,
        "device_memory": 8,
        "languages": [["en-US"]],
        "local_storage": True,
        "math_ml": {"width": 11.15, "height": 14},
        "inverted_colors": False,
        "os_cpu": "MacIntel",
        "emoji": {"width": 22, "height": 19, "font": "Apple Color Emoji"},
        "date_time_locale": "en-US",
        "math": {"acos": 1.4473588658278522, "tan": -1.4214488238747245},
        "timezone": "Europe/Berlin",
        "webgl_basics": {"vendor": "WebKit", "renderer": "Apple M1"},
        "webgl_extensions": {"contextAttributes": "alpha=true", "extensions": "ANGLE_instanced_arrays"},
        "private_click_measurement": "",
        "vendor_flavors": ["chrome"],
        "architecture": 255,
        "audio_base_latency": 0.005333,
        "contrast": 0,
        "platform": "MacIntel",
        "fonts": ["Arial Unicode MS", "Gill Sans", "Helvetica Neue", "Menlo"],
        "vendor": "Google Inc.",
        "cpu_class": "unknown",
        "indexed_db": True,
        "cookies_enabled": True,
        "pdf_viewer_enabled": True,
        "hdr": False,
        "canvas": {"winding": True, "geometry": "data:image/png;base64,iVBORw0KG", "text": "abc"},
        "hardware_concurrency": 8,
        "color_depth": 30,
        "reduced_motion": False,
        "color_gamut": "p3",
        "monochrome": 0,
    }
