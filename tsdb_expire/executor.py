from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .aggregation import DEFAULT_BREADTH
from .decider import MODE_UNCONDITIONAL, MODE_ZERO_ONLY
from .observability import log_event
from .opentsdb import Query, QueryError, Request, TSDBClient
from .otel import record_deleted_window
from .timeutil import iter_windows

logger = logging.getLogger(__name__)

Window = tuple[datetime, datetime]


@dataclass
class DeletionResult:
    metric: str
    mode: str
    dry_run: bool = False
    deleted: list[Window] = field(default_factory=list)
    skipped: list[Window] = field(default_factory=list)


class DeletionError(QueryError):
    """A delete or verification call failed part-way through a range.

    Windows already deleted stay deleted; `result` lists them.
    """

    def __init__(self, message: str, *, result: DeletionResult, window: Window, status_code: int | None = None) -> None:
        super().__init__(message, status_code=status_code)
        self.result = result
        self.window = window


def _all_zero(values: list[float]) -> bool:
    return all(v == 0 for v in values)


class DeletionExecutor:
    """Issue chunked deletes against the store.

    With `dry_run` set, delete calls are logged instead of sent. Zero-only
    verification queries still run because they are read-only.
    """

    def __init__(self, client: TSDBClient, *, breadth: timedelta = DEFAULT_BREADTH, dry_run: bool = False) -> None:
        self.client = client
        self.breadth = breadth
        self.dry_run = dry_run

    def execute(self, metric: str, start: datetime, end: datetime, mode: str) -> DeletionResult:
        if mode == MODE_UNCONDITIONAL:
            return self.delete_range(metric, start, end)
        if mode == MODE_ZERO_ONLY:
            return self.delete_zero_only(metric, start, end)
        raise ValueError(f"unknown deletion mode: {mode!r}")

    def _delete_window(self, metric: str, lo: datetime, hi: datetime) -> None:
        if self.dry_run:
            log_event("delete_window", metric=metric, start=lo, end=hi, dry_run=True)
            return
        query = Query(metric=metric, aggregator="sum", downsample="1d-count")
        self.client.delete(Request(start=lo, end=hi, queries=[query]))
        log_event("delete_window", metric=metric, start=lo, end=hi)

    def delete_range(self, metric: str, start: datetime, end: datetime) -> DeletionResult:
        """Delete every raw point of `metric` in `[start, end)`, one window at a time.

        The first failed window aborts the rest.
        """

        result = DeletionResult(metric=metric, mode=MODE_UNCONDITIONAL, dry_run=self.dry_run)
        log_event("delete_range", metric=metric, start=start, end=end, dry_run=self.dry_run)
        for lo, hi in iter_windows(start, end, self.breadth):
            try:
                self._delete_window(metric, lo, hi)
            except QueryError as e:
                raise DeletionError(str(e), result=result, window=(lo, hi), status_code=e.status_code) from e
            result.deleted.append((lo, hi))
            record_deleted_window(metric=metric, mode=MODE_UNCONDITIONAL)
        return result

    def delete_zero_only(self, metric: str, start: datetime, end: datetime) -> DeletionResult:
        """Delete only windows whose daily max and min are exactly zero everywhere.

        Windows holding any non-zero value are skipped, not retried.
        """

        result = DeletionResult(metric=metric, mode=MODE_ZERO_ONLY, dry_run=self.dry_run)
        log_event("delete_zero_only", metric=metric, start=start, end=end, dry_run=self.dry_run)
        for lo, hi in iter_windows(start, end, self.breadth):
            queries = [
                Query(metric=metric, aggregator="sum", downsample="1d-max"),
                Query(metric=metric, aggregator="sum", downsample="1d-min"),
            ]
            try:
                resp = self.client.query(Request(start=lo, end=hi, queries=queries))
                values = [v for r in resp for v in r.dps.values()]
                if not _all_zero(values):
                    logger.debug("skipping %s [%s, %s): non-zero values present", metric, lo, hi)
                    result.skipped.append((lo, hi))
                    continue
                self._delete_window(metric, lo, hi)
            except QueryError as e:
                raise DeletionError(str(e), result=result, window=(lo, hi), status_code=e.status_code) from e
            result.deleted.append((lo, hi))
            record_deleted_window(metric=metric, mode=MODE_ZERO_ONLY)
        return result
