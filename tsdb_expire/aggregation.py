"""Day-bucket aggregation of datapoint counts.

`gather_info` folds `1d-count` responses, fetched in bounded windows, into a metric's
day histogram. `collect_tag_sets` then enumerates the distinct tag combinations under
the metric in batches sized by accumulated datapoint volume.

A `Metric` value is owned by the pass that builds it and is never shared between
metrics or rules.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .observability import log_event
from .opentsdb import Query, QueryError, Request, Response, TSDBClient
from .timeutil import DAY, iter_windows, parse_timestamp, truncate_day, utcnow

logger = logging.getLogger(__name__)

DEFAULT_BREADTH = timedelta(hours=6)
DEFAULT_TAG_BATCH_THRESHOLD = 10_000_000


@dataclass
class _Series:
    days: dict[datetime, int] = field(default_factory=dict)
    first: datetime | None = None
    last: datetime | None = None

    def observe(self, t: datetime, count: int) -> None:
        if self.last is None or t > self.last:
            self.last = t
        if self.first is None or t < self.first:
            self.first = t
        day = truncate_day(t)
        self.days[day] = self.days.get(day, 0) + count

    def fold(self, resp: Response) -> None:
        for ts, value in resp.dps.items():
            try:
                t = parse_timestamp(ts)
                count = int(value)
            except (ValueError, OverflowError, OSError) as e:
                raise QueryError(f"unusable datapoint {ts!r}={value!r} for {resp.metric}: {e}") from e
            self.observe(t, count)

    def sorted_days(self, *, reverse: bool = False) -> list[datetime]:
        return sorted(self.days, reverse=reverse)

    @property
    def has_data(self) -> bool:
        return bool(self.days)

    @property
    def oldest_day(self) -> datetime | None:
        return min(self.days) if self.days else None

    @property
    def newest_day(self) -> datetime | None:
        return max(self.days) if self.days else None


@dataclass
class TagSeries(_Series):
    tags: dict[str, str] = field(default_factory=dict)


@dataclass
class Metric(_Series):
    name: str = ""
    tag_keys: set[str] = field(default_factory=set)
    tag_sets: dict[str, TagSeries] = field(default_factory=dict)


@dataclass
class TagCollection:
    """Outcome of one `collect_tag_sets` walk."""

    batches: list[tuple[datetime, datetime]] = field(default_factory=list)
    failed: list[tuple[datetime, datetime, str]] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failed)


def _count_query(metric: str, tags: dict[str, str] | None = None) -> Query:
    return Query(metric=metric, aggregator="sum", downsample="1d-count", tags=dict(tags or {}))


def gather_info(
    client: TSDBClient,
    name: str,
    start: datetime,
    end: datetime,
    *,
    breadth: timedelta = DEFAULT_BREADTH,
) -> Metric:
    """Build the day histogram for `name` over `[start, end)`.

    Windows are at most `breadth` wide. Any window failure raises QueryError; a
    missing window must never look like a day without data.
    """

    metric = Metric(name=name)
    log_event("gather_info", metric=name, start=start, end=end)
    for lo, hi in iter_windows(start, end, breadth):
        resp = client.query(Request(start=lo, end=hi, queries=[_count_query(name)]))
        for r in resp:
            metric.fold(r)
            metric.tag_keys.update(r.aggregate_tags)

    logger.debug("gathered %s: days=%d tag_keys=%s", name, len(metric.days), sorted(metric.tag_keys))
    return metric


def _gather_tag_batch(client: TSDBClient, metric: Metric, start: datetime, end: datetime) -> None:
    tags = {k: "*" for k in sorted(metric.tag_keys)}
    resp = client.query(Request(start=start, end=end, queries=[_count_query(metric.name, tags)]))
    for r in resp:
        key = r.tag_key
        series = metric.tag_sets.get(key)
        if series is None:
            series = TagSeries(tags=dict(r.tags))
            metric.tag_sets[key] = series
        series.fold(r)


def collect_tag_sets(
    client: TSDBClient,
    metric: Metric,
    *,
    threshold: int = DEFAULT_TAG_BATCH_THRESHOLD,
    now: datetime | None = None,
) -> TagCollection:
    """Populate `metric.tag_sets` from an already gathered histogram.

    Days are walked oldest first. Once the running count exceeds `threshold` the
    accumulated span is queried and the next span starts the day after. Whatever is
    left over is queried up to `now`. A failed batch is recorded and skipped.
    """

    now_dt = utcnow() if now is None else now
    result = TagCollection()
    days = metric.sorted_days()
    if not days:
        return result

    def flush(lo: datetime, hi: datetime) -> None:
        result.batches.append((lo, hi))
        try:
            _gather_tag_batch(client, metric, lo, hi)
        except QueryError as e:
            result.failed.append((lo, hi, str(e)))
            log_event(
                "tag_batch_failed",
                severity="WARNING",
                metric=metric.name,
                start=lo,
                end=hi,
                error=str(e),
            )

    span_start = days[0]
    count = 0
    for day in days:
        count += metric.days[day]
        if count > threshold:
            flush(span_start, day + DAY)
            span_start = day + DAY
            count = 0

    if count != 0:
        flush(span_start, now_dt if now_dt > span_start else span_start + DAY)

    log_event(
        "tag_sets_collected",
        metric=metric.name,
        batches=len(result.batches),
        failed=len(result.failed),
        tag_sets=len(metric.tag_sets),
    )
    return result
