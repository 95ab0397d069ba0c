"""pytest configuration.

The repo is usable without installing the package into a virtualenv: running
`pytest` from the repo root must resolve `import tsdb_expire` to `./tsdb_expire`, so
the repo root is forced onto `sys.path` here.
"""

from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from fakes import FakeStore  # noqa: E402


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 6, 15, 12, 30, tzinfo=timezone.utc)


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()
