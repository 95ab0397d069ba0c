"""Per (metric, rule) retention decisions.

Boundaries are computed from `now` and the rule; the decision itself is a pure
function of the day histogram, so re-running it on the same histogram always yields
the same range.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from .rules import RetentionRule
from .timeutil import DAY, day_before

MODE_UNCONDITIONAL = "unconditional"
MODE_ZERO_ONLY = "zero_only_verify"

NO_DATA = "no_data"
NOTHING_ELIGIBLE = "nothing_eligible"
ELIGIBLE = "eligible"


@dataclass(frozen=True)
class Boundaries:
    lookback: datetime
    expire: datetime
    cooldown: datetime | None = None

    @property
    def upper(self) -> datetime:
        """Aggregation horizon. A cooldown later than expiry wins."""
        if self.cooldown is not None and self.cooldown > self.expire:
            return self.cooldown
        return self.expire


def compute_boundaries(rule: RetentionRule, *, lookback: timedelta, now: datetime) -> Boundaries:
    cooldown: datetime | None = None
    if rule.cooldown > timedelta(0):
        cooldown = day_before(now, rule.cooldown)
    return Boundaries(
        lookback=day_before(now, lookback),
        expire=day_before(now, rule.expire),
        cooldown=cooldown,
    )


@dataclass(frozen=True)
class Decision:
    status: str
    boundaries: Boundaries
    oldest_day: datetime | None = None
    newest_day: datetime | None = None
    within_cooldown: bool = False
    start: datetime | None = None
    end: datetime | None = None
    mode: str | None = None

    @property
    def eligible(self) -> bool:
        return self.status == ELIGIBLE


def decide(days: Iterable[datetime], boundaries: Boundaries, rule: RetentionRule) -> Decision:
    """Compute the contiguous `[start, end)` range of days eligible for deletion.

    The range starts at the oldest observed day and runs through the newest observed
    day, stopping early at the expiry boundary. `within_cooldown` only reports
    recent activity; it does not block deleting older days.
    """

    keys = list(days)
    if not keys:
        return Decision(status=NO_DATA, boundaries=boundaries)

    oldest = min(keys)
    newest = max(keys)
    within_cooldown = boundaries.cooldown is not None and newest > boundaries.cooldown

    end = min(newest + DAY, boundaries.expire)
    if oldest >= boundaries.expire or oldest >= end:
        return Decision(
            status=NOTHING_ELIGIBLE,
            boundaries=boundaries,
            oldest_day=oldest,
            newest_day=newest,
            within_cooldown=within_cooldown,
        )

    return Decision(
        status=ELIGIBLE,
        boundaries=boundaries,
        oldest_day=oldest,
        newest_day=newest,
        within_cooldown=within_cooldown,
        start=oldest,
        end=end,
        mode=MODE_ZERO_ONLY if rule.zero_only else MODE_UNCONDITIONAL,
    )
