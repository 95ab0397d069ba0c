from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .version import get_version

# Load a local .env for operator convenience.
# - Does NOT override already-set environment variables (cron/systemd env wins)
# - Safe: if .env doesn't exist, no-op
load_dotenv: Callable[..., object] | None
try:
    from dotenv import load_dotenv as _load_dotenv  # python-dotenv
except Exception:  # pragma: no cover
    load_dotenv = None
else:
    load_dotenv = _load_dotenv

_REPO_ROOT = Path(__file__).resolve().parents[1]  # repo root (where .env lives)
_ENV_PATH = _REPO_ROOT / ".env"
if load_dotenv is not None and _ENV_PATH.exists():
    load_dotenv(dotenv_path=_ENV_PATH, override=False)


def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v is not None and v.strip() != "" else default


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return int(v.strip())
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return float(v.strip())
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


_ALLOWED_SCHEMES = {"http", "https"}
_ALLOWED_METRICS_SOURCES = {"uid", "suggest"}


@dataclass(frozen=True)
class Settings:
    """Process-level configuration for tsdb-expire.

    Retention rules live in a separate TOML file (see `rules.py`); this only holds
    how to reach the store and how large each request may be.
    """

    # ---- Build / runtime ----
    version: str

    # ---- Store ----
    tsdb_host: str
    tsdb_port: int
    tsdb_scheme: str  # http | https
    tsdb_timeout_s: float

    # ---- Rules ----
    retention_config: str

    # ---- Request sizing ----
    query_breadth_hours: int
    tag_batch_threshold: int

    # ---- Metric enumeration ----
    metrics_source: str  # uid | suggest
    tsdb_cli: str
    suggest_max: int

    # ---- OpenTelemetry ----
    otel_enabled: bool
    otel_exporter_otlp_endpoint: str | None
    otel_service_name: str


def load_settings() -> Settings:
    tsdb_scheme = _env_str("TSDB_SCHEME", "http").lower().strip()
    if tsdb_scheme not in _ALLOWED_SCHEMES:
        tsdb_scheme = "http"

    tsdb_port = _env_int("TSDB_PORT", 4242)
    if not 0 < tsdb_port < 65536:
        tsdb_port = 4242

    # Wider windows risk truncated responses from the store.
    query_breadth_hours = _env_int("QUERY_BREADTH_HOURS", 6)
    if query_breadth_hours <= 0:
        query_breadth_hours = 6

    tag_batch_threshold = _env_int("TAG_BATCH_THRESHOLD", 10_000_000)
    if tag_batch_threshold <= 0:
        tag_batch_threshold = 10_000_000

    metrics_source = _env_str("METRICS_SOURCE", "uid").lower().strip()
    if metrics_source not in _ALLOWED_METRICS_SOURCES:
        metrics_source = "uid"

    return Settings(
        version=_env_str("APP_VERSION", get_version()),
        tsdb_host=_env_str("TSDB_HOST", "localhost"),
        tsdb_port=tsdb_port,
        tsdb_scheme=tsdb_scheme,
        tsdb_timeout_s=_env_float("TSDB_TIMEOUT_S", 60.0),
        retention_config=_env_str("RETENTION_CONFIG", "config.toml"),
        query_breadth_hours=query_breadth_hours,
        tag_batch_threshold=tag_batch_threshold,
        metrics_source=metrics_source,
        tsdb_cli=_env_str("TSDB_CLI", "tsdb"),
        suggest_max=_env_int("SUGGEST_MAX", 1_000_000),
        otel_enabled=_env_bool("OTEL_ENABLED", False),
        otel_exporter_otlp_endpoint=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") or None,
        otel_service_name=_env_str("OTEL_SERVICE_NAME", "tsdb-expire"),
    )


settings = load_settings()
