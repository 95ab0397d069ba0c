from __future__ import annotations

import tomllib
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

DIST_NAME = "tsdb-expire"
_PYPROJECT = Path(__file__).resolve().parents[1] / "pyproject.toml"


def _pyproject_version(path: Path) -> str | None:
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError):
        return None
    v = data.get("project", {}).get("version")
    return v.strip() if isinstance(v, str) and v.strip() else None


def get_version() -> str:
    """Installed distribution version, else the checkout's pyproject.toml, else 0.0.0."""
    try:
        return version(DIST_NAME)
    except PackageNotFoundError:
        pass
    return _pyproject_version(_PYPROJECT) or "0.0.0"
