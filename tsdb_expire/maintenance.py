"""Retention run orchestration.

This module keeps the run loop out of the CLI so it can be driven from:

- CLI commands (`python -m tsdb_expire.cli run ...`)
- tests, with a fake store behind `TSDBClient`

Run semantics:

- metrics are processed one at a time, matching rules within a metric one at a time;
- every (metric, rule) pass gathers its own histogram, since the aggregation
  horizon depends on the rule;
- a store failure ends that pass only; the run moves on to the next pass;
- the default is a dry-run: nothing is deleted unless `apply=True`.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable

from .aggregation import DEFAULT_BREADTH, gather_info
from .decider import NO_DATA, Decision, compute_boundaries, decide
from .executor import DeletionError, DeletionExecutor, DeletionResult
from .observability import Timer, log_event
from .opentsdb import QueryError, TSDBClient
from .otel import record_outcome, span
from .rules import RetentionConfig, RetentionRule, match
from .timeutil import utcnow

logger = logging.getLogger(__name__)

STATUS_DELETED = "deleted"
STATUS_DRY_RUN = "dry_run"
STATUS_NO_DATA = "no_data"
STATUS_NOTHING_ELIGIBLE = "nothing_eligible"
STATUS_FAILED = "failed"


@dataclass
class Outcome:
    metric: str
    rule: str
    status: str
    decision: Decision | None = None
    deletion: DeletionResult | None = None
    error: str | None = None

    @property
    def windows_deleted(self) -> int:
        return len(self.deletion.deleted) if self.deletion else 0

    @property
    def windows_skipped(self) -> int:
        return len(self.deletion.skipped) if self.deletion else 0


@dataclass
class RunReport:
    apply: bool
    now: datetime
    metrics_seen: int = 0
    outcomes: list[Outcome] = field(default_factory=list)

    @property
    def failures(self) -> list[Outcome]:
        return [o for o in self.outcomes if o.status == STATUS_FAILED]

    def counts(self) -> dict[str, int]:
        return dict(Counter(o.status for o in self.outcomes))


def process_metric_rule(
    client: TSDBClient,
    metric: str,
    rule: RetentionRule,
    *,
    lookback: timedelta,
    now: datetime,
    executor: DeletionExecutor,
    breadth: timedelta = DEFAULT_BREADTH,
) -> Outcome:
    """Gather, decide and (maybe) delete for one (metric, rule) pair."""

    boundaries = compute_boundaries(rule, lookback=lookback, now=now)
    try:
        info = gather_info(client, metric, boundaries.lookback, boundaries.upper, breadth=breadth)
    except QueryError as e:
        log_event("gather_failed", severity="ERROR", metric=metric, rule=rule.name, error=str(e))
        return Outcome(metric=metric, rule=rule.name, status=STATUS_FAILED, error=str(e))

    decision = decide(info.days, boundaries, rule)
    if decision.status == NO_DATA:
        log_event(
            "no_data",
            metric=metric,
            rule=rule.name,
            start=boundaries.lookback,
            end=boundaries.upper,
        )
        return Outcome(metric=metric, rule=rule.name, status=STATUS_NO_DATA, decision=decision)

    if decision.within_cooldown:
        log_event(
            "within_cooldown",
            metric=metric,
            rule=rule.name,
            newest_day=decision.newest_day,
            cooldown=boundaries.cooldown,
        )

    if not decision.eligible:
        log_event(
            "nothing_eligible",
            metric=metric,
            rule=rule.name,
            oldest_day=decision.oldest_day,
            expire=boundaries.expire,
        )
        return Outcome(metric=metric, rule=rule.name, status=STATUS_NOTHING_ELIGIBLE, decision=decision)

    assert decision.start is not None and decision.end is not None and decision.mode is not None
    try:
        deletion = executor.execute(metric, decision.start, decision.end, decision.mode)
    except DeletionError as e:
        log_event(
            "delete_failed",
            severity="ERROR",
            metric=metric,
            rule=rule.name,
            window=list(e.window),
            windows_done=len(e.result.deleted),
            error=str(e),
        )
        return Outcome(
            metric=metric,
            rule=rule.name,
            status=STATUS_FAILED,
            decision=decision,
            deletion=e.result,
            error=str(e),
        )

    status = STATUS_DRY_RUN if executor.dry_run else STATUS_DELETED
    return Outcome(metric=metric, rule=rule.name, status=status, decision=decision, deletion=deletion)


def run_retention(
    client: TSDBClient,
    metrics: Iterable[str],
    config: RetentionConfig,
    *,
    now: datetime | None = None,
    apply: bool = False,
    breadth: timedelta = DEFAULT_BREADTH,
) -> RunReport:
    """Apply every matching rule to every metric.

    Returns a report of all outcomes. If `apply` is False, no deletes are sent and
    the run acts as a dry-run.
    """

    timer = Timer()
    now_dt = utcnow() if now is None else now
    executor = DeletionExecutor(client, breadth=breadth, dry_run=not apply)
    report = RunReport(apply=apply, now=now_dt)

    for metric in metrics:
        report.metrics_seen += 1
        for rule in match(metric, config.rules):
            with span("tsdb_expire.process", {"tsdb.metric": metric, "retention.rule": rule.name}):
                outcome = process_metric_rule(
                    client,
                    metric,
                    rule,
                    lookback=config.lookback,
                    now=now_dt,
                    executor=executor,
                    breadth=breadth,
                )
            record_outcome(rule=rule.name, status=outcome.status)
            report.outcomes.append(outcome)

    log_event(
        "run_complete",
        apply=apply,
        metrics=report.metrics_seen,
        elapsed_ms=round(timer.ms(), 1),
        **report.counts(),
    )
    return report
