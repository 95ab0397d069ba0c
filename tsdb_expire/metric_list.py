from __future__ import annotations

import logging
import subprocess
from typing import Sequence

from .opentsdb import QueryError, TSDBClient

logger = logging.getLogger(__name__)


class EnumerationError(Exception):
    """Raised when the list of known metric names cannot be obtained."""


def parse_uid_grep(output: str) -> list[str]:
    """Parse `tsdb uid grep metrics .` output.

    Lines look like `metrics win.system.handle_count: [0, 3, 109]`; anything else is
    ignored.
    """

    names: list[str] = []
    for line in output.splitlines():
        if not line.startswith("metrics "):
            continue
        head = line.split(":", 1)[0]
        parts = head.split()
        if len(parts) >= 2 and parts[1]:
            names.append(parts[1])
    return names


def list_metrics_uid(tsdb_cli: str = "tsdb", *, timeout_s: float | None = None) -> list[str]:
    cmd: Sequence[str] = [tsdb_cli, "uid", "grep", "metrics", "."]
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=timeout_s)
    except FileNotFoundError as e:
        raise EnumerationError(f"{tsdb_cli} not found on PATH") from e
    except OSError as e:
        raise EnumerationError(f"cannot run {tsdb_cli}: {e}") from e
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or "").strip()[:200]
        raise EnumerationError(f"{' '.join(cmd)} exited {e.returncode}: {stderr}") from e
    except subprocess.TimeoutExpired as e:
        raise EnumerationError(f"{' '.join(cmd)} timed out") from e
    return parse_uid_grep(proc.stdout)


def list_metrics_suggest(client: TSDBClient, *, max_results: int) -> list[str]:
    try:
        names = client.suggest_metrics(max_results=max_results)
    except QueryError as e:
        raise EnumerationError(f"metric suggest failed: {e}") from e
    if len(names) >= max_results:
        logger.warning("suggest returned %d metrics (the limit); the list may be truncated", len(names))
    return names


def list_metrics(source: str, *, client: TSDBClient, tsdb_cli: str = "tsdb", suggest_max: int = 1_000_000) -> list[str]:
    if source == "uid":
        names = list_metrics_uid(tsdb_cli)
    elif source == "suggest":
        names = list_metrics_suggest(client, max_results=suggest_max)
    else:
        raise EnumerationError(f"unknown metrics source: {source!r}")
    # Deduplicate but keep the store's order.
    return list(dict.fromkeys(names))
