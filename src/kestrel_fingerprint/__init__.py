"""Kestrel fingerprint engine: device identity, matching, velocity and risk scoring."""

from importlib.metadata import PackageNotFoundError, version as _dist_version
from pathlib import Path as _Path

def _read_version() -> str:
    """Read version from the repo-level VERSION file (single source of truth)."""
    # Walk up from this file to find the VERSION file at repo root
    for parent in _Path(__file__).resolve().parents:
        candidate = parent / "VERSION"
        if candidate.is_file():
            return candidate.read_text().strip()
    # Installed without the source tree
    try:
        return _dist_version("kestrel-fingerprint")
    except PackageNotFoundError:
        return "0.0.0"

__version__ = _read_version()
