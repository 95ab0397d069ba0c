from __future__ import annotations

import json
import logging
import os
import time
from datetime import datetime
from typing import Any

LOGGER_NAME = "tsdb_expire"


def configure_logging(*, debug: bool = False) -> None:
    """Configure the `tsdb_expire` logger.

    We emit **JSON lines** so cron/systemd journals and log shippers can filter on
    metric, rule, and outcome fields without regex parsing.
    """

    level_name = "DEBUG" if debug else os.getenv("LOG_LEVEL", "INFO").upper().strip()
    level = getattr(logging, level_name, logging.INFO)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))

    # Replace handlers so repeated configuration doesn't duplicate logs.
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.propagate = False


def _jsonable(v: Any) -> Any:
    if isinstance(v, datetime):
        return v.isoformat()
    if isinstance(v, (str, bool, int, float)) or v is None:
        return v
    if isinstance(v, dict):
        return {str(k): _jsonable(x) for k, x in v.items()}
    if isinstance(v, (list, tuple, set, frozenset)):
        return [_jsonable(x) for x in v]
    return str(v)


def log_event(message: str, *, severity: str = "INFO", **fields: Any) -> None:
    """Emit one structured event line on the package logger.

    `fields` with a None value are dropped.
    """

    logger = logging.getLogger(LOGGER_NAME)
    level = getattr(logging, severity.upper(), logging.INFO)
    if not logger.isEnabledFor(level):
        return

    payload: dict[str, Any] = {"severity": severity.upper(), "message": message}
    for k, v in fields.items():
        if v is None:
            continue
        payload[k] = _jsonable(v)

    logger.log(level, json.dumps(payload, ensure_ascii=False, sort_keys=False))


class Timer:
    """Tiny helper for timing blocks."""

    def __init__(self) -> None:
        self._t0 = time.perf_counter()

    def ms(self) -> float:
        return (time.perf_counter() - self._t0) * 1000.0
