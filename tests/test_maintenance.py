from __future__ import annotations

from datetime import datetime, timedelta

from fakes import FakeStore
from tsdb_expire.maintenance import (
    STATUS_DELETED,
    STATUS_DRY_RUN,
    STATUS_FAILED,
    STATUS_NO_DATA,
    STATUS_NOTHING_ELIGIBLE,
    run_retention,
)
from tsdb_expire.rules import RetentionConfig, RetentionRule, parse_rules
from tsdb_expire.timeutil import truncate_day


def _day(now: datetime, offset: int) -> datetime:
    return truncate_day(now) + timedelta(days=offset)


def _config() -> RetentionConfig:
    return parse_rules(
        {
            "LookBack": "30d",
            "Rule": [
                {"Name": "apps", "Metrics": ["app.*"], "Expire": "14d"},
                {"Name": "db-zero", "Metrics": ["db.*"], "Expire": "14d", "ZeroOnly": True},
                {"Name": "cache", "Metrics": ["cache.*"], "Expire": "14d", "Cooldown": "3d"},
            ],
        }
    )


def _populate(store: FakeStore, now: datetime) -> None:
    for o in range(-30, 0):
        store.fill_day("app.requests", _day(now, o), 5.0)
        store.fill_day("web.hits", _day(now, o), 1.0)
    for o in range(-30, -20):
        store.fill_day("db.conn", _day(now, o), 5.0)
    for o in range(-20, 0):
        store.fill_day("db.conn", _day(now, o), 0.0)
    # Only recent data: nothing older than the expiry boundary.
    for o in range(-5, 0):
        store.fill_day("app.fresh", _day(now, o), 1.0)
    # Active between expiry (-14) and cooldown (-3).
    for o in range(-10, -5):
        store.fill_day("cache.hits", _day(now, o), 1.0)


METRICS = ["app.requests", "web.hits", "db.conn", "app.fresh", "cache.hits"]


def test_run_retention_apply(store: FakeStore, now: datetime) -> None:
    _populate(store, now)
    with store.client() as client:
        report = run_retention(client, METRICS, _config(), now=now, apply=True)

    assert report.metrics_seen == 5
    by_metric = {o.metric: o for o in report.outcomes}
    # web.hits matches no rule and gets no pass at all.
    assert set(by_metric) == {"app.requests", "db.conn", "app.fresh", "cache.hits"}

    app = by_metric["app.requests"]
    assert app.status == STATUS_DELETED
    assert app.windows_deleted == 64
    assert (app.decision.start, app.decision.end) == (_day(now, -30), _day(now, -14))
    assert store.points("app.requests") == 14 * 24

    db = by_metric["db.conn"]
    assert db.status == STATUS_DELETED
    assert (db.windows_deleted, db.windows_skipped) == (24, 40)
    assert store.points("db.conn") == 24 * 24

    assert by_metric["app.fresh"].status == STATUS_NO_DATA
    assert by_metric["cache.hits"].status == STATUS_NOTHING_ELIGIBLE

    assert store.points("web.hits") == 30 * 24
    assert report.failures == []
    assert report.counts() == {STATUS_DELETED: 2, STATUS_NO_DATA: 1, STATUS_NOTHING_ELIGIBLE: 1}


def test_run_retention_defaults_to_dry_run(store: FakeStore, now: datetime) -> None:
    _populate(store, now)
    with store.client() as client:
        report = run_retention(client, METRICS, _config(), now=now)

    assert not report.apply
    assert store.deletes == []
    by_metric = {o.metric: o for o in report.outcomes}
    assert by_metric["app.requests"].status == STATUS_DRY_RUN
    assert by_metric["app.requests"].windows_deleted == 64
    assert by_metric["db.conn"].windows_deleted == 24
    assert store.points("app.requests") == 30 * 24


def test_failed_metric_does_not_stop_the_run(store: FakeStore, now: datetime) -> None:
    _populate(store, now)
    for o in range(-25, -15):
        store.fill_day("app.broken", _day(now, o), 1.0)
    store.fail_when = lambda body: body["queries"][0]["metric"] == "app.broken"

    with store.client() as client:
        report = run_retention(client, ["app.broken", "app.requests"], _config(), now=now, apply=True)

    broken, ok = report.outcomes
    assert broken.status == STATUS_FAILED
    assert broken.decision is None
    assert "boom" in (broken.error or "")
    assert ok.status == STATUS_DELETED
    assert [o.metric for o in report.failures] == ["app.broken"]


def test_failed_delete_keeps_partial_progress(store: FakeStore, now: datetime) -> None:
    _populate(store, now)
    fail_at = int(_day(now, -20).timestamp())
    store.fail_when = lambda body: bool(body.get("delete")) and body["start"] == fail_at

    with store.client() as client:
        report = run_retention(client, ["app.requests"], _config(), now=now, apply=True)

    (outcome,) = report.outcomes
    assert outcome.status == STATUS_FAILED
    assert outcome.windows_deleted == 10 * 4
    assert store.points("app.requests") == 20 * 24


def test_every_matching_rule_gets_its_own_pass(store: FakeStore, now: datetime) -> None:
    _populate(store, now)
    config = parse_rules(
        {
            "lookback": "30d",
            "rule": [
                {"name": "long", "metrics": ["app.requests"], "expire": "20d"},
                {"name": "short", "metrics": ["app.*"], "expire": "14d"},
            ],
        }
    )
    with store.client() as client:
        report = run_retention(client, ["app.requests"], config, now=now, apply=True)

    long_pass, short_pass = report.outcomes
    assert (long_pass.rule, long_pass.status) == ("long", STATUS_DELETED)
    assert (long_pass.decision.start, long_pass.decision.end) == (_day(now, -30), _day(now, -20))
    # The second pass re-gathers and sees only what the first one left.
    assert (short_pass.decision.start, short_pass.decision.end) == (_day(now, -20), _day(now, -14))
    assert short_pass.windows_deleted == 6 * 4
    assert store.points("app.requests") == 14 * 24


def test_malformed_store_payload_fails_only_that_metric(store: FakeStore, now: datetime) -> None:
    _populate(store, now)
    store.raw_payloads["app.bad"] = [{"metric": "app.bad", "tags": {}, "dps": {"1781000000": None}}]

    with store.client() as client:
        report = run_retention(client, ["app.bad", "app.requests"], _config(), now=now, apply=True)

    bad, ok = report.outcomes
    assert bad.status == STATUS_FAILED
    assert "malformed payload" in (bad.error or "")
    assert ok.metric == "app.requests"
    assert ok.status == STATUS_DELETED
    assert ok.windows_deleted == 64


def test_rule_reaching_before_year_one_finds_nothing(store: FakeStore, now: datetime) -> None:
    _populate(store, now)
    config = RetentionConfig(
        lookback=timedelta(days=30),
        rules=(RetentionRule.build("ancient", ["app.*"], expire=timedelta(days=365 * 3000)),),
    )
    with store.client() as client:
        report = run_retention(client, ["app.requests"], config, now=now, apply=True)

    (outcome,) = report.outcomes
    assert outcome.status == STATUS_NO_DATA
    assert store.deletes == []
