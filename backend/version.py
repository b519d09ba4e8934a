"""
Application version for the health endpoints.

Source checkouts read the repo root VERSION file; installed copies fall back to
the distribution metadata.
"""

from __future__ import annotations

from importlib import metadata
from pathlib import Path

DISTRIBUTION = "resilient-backend"
UNKNOWN_VERSION = "0.0.0"


def _version_file_path() -> Path:
    # backend/version.py -> repo root
    return Path(__file__).resolve().parent.parent / "VERSION"


def get_version() -> str:
    """Return the VERSION file's first line, else the installed version, else '0.0.0'."""
    path = _version_file_path()
    try:
        raw = path.read_text(encoding="utf-8").strip()
    except OSError:
        raw = ""
    if raw:
        return raw.splitlines()[0].strip()
    try:
        return metadata.version(DISTRIBUTION)
    except metadata.PackageNotFoundError:
        return UNKNOWN_VERSION
