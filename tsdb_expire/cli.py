from __future__ import annotations

import argparse
from datetime import datetime, timedelta

from .config import settings
from .maintenance import Outcome, run_retention
from .metric_list import EnumerationError, list_metrics
from .observability import configure_logging
from .opentsdb import QueryError, TSDBClient
from .otel import setup_otel, shutdown_otel
from .rules import ConfigurationError, RetentionConfig, load_rules, match
from .timeutil import format_duration, from_unix, parse_duration, utcnow


def _day(t: datetime | None) -> str:
    return t.strftime("%Y-%m-%d") if t is not None else "-"


def _open_client(host: str | None, port: int | None) -> TSDBClient:
    base = f"{settings.tsdb_scheme}://{host or settings.tsdb_host}:{port or settings.tsdb_port}"
    return TSDBClient(base, timeout_s=settings.tsdb_timeout_s)


def _load_config(path: str | None) -> RetentionConfig:
    config_path = path or settings.retention_config
    try:
        return load_rules(config_path)
    except ConfigurationError as e:
        raise SystemExit(f"Configuration error: {e}")


def _breadth() -> timedelta:
    return timedelta(hours=settings.query_breadth_hours)


def _format_outcome(o: Outcome) -> str:
    parts = [f"metric={o.metric}", f"rule={o.rule}", f"status={o.status}"]
    d = o.decision
    if d is not None and d.oldest_day is not None:
        parts.append(f"days={_day(d.oldest_day)}..{_day(d.newest_day)}")
    if d is not None and d.eligible:
        parts.append(f"range=[{_day(d.start)}, {_day(d.end)})")
        parts.append(f"mode={d.mode}")
    if d is not None and d.within_cooldown:
        parts.append("within_cooldown=true")
    if o.deletion is not None:
        parts.append(f"windows={o.windows_deleted}")
        if o.windows_skipped:
            parts.append(f"skipped_nonzero={o.windows_skipped}")
    if o.error:
        parts.append(f"error={o.error!r}")
    return "  - " + " ".join(parts)


def cmd_run(
    *,
    config_path: str | None,
    host: str | None,
    port: int | None,
    apply: bool,
    now: int | None,
) -> None:
    """Apply retention rules to every known metric (dry-run unless `apply`)."""

    config = _load_config(config_path)
    now_dt = utcnow() if now is None else from_unix(int(now))

    with _open_client(host, port) as client:
        try:
            metrics = list_metrics(
                settings.metrics_source,
                client=client,
                tsdb_cli=settings.tsdb_cli,
                suggest_max=settings.suggest_max,
            )
        except EnumerationError as e:
            raise SystemExit(f"Metric enumeration failed: {e}")

        report = run_retention(client, metrics, config, now=now_dt, apply=apply, breadth=_breadth())

    mode = "apply" if apply else "dry-run"
    print(
        f"Retention run mode={mode} now={int(now_dt.timestamp())} metrics={report.metrics_seen} "
        f"rules={len(config.rules)} passes={len(report.outcomes)}"
    )
    for o in report.outcomes:
        print(_format_outcome(o))

    windows = sum(o.windows_deleted for o in report.outcomes)
    if apply:
        print(f"Deleted {windows} window(s).")
    else:
        print(f"Would delete {windows} window(s). Re-run with --apply to delete.")

    if report.failures:
        print(f"\n{len(report.failures)} metric/rule pass(es) failed:")
        for o in report.failures:
            print(f"- {o.metric} ({o.rule}): {o.error}")
        raise SystemExit(1)


def cmd_list_metrics(*, host: str | None, port: int | None) -> None:
    with _open_client(host, port) as client:
        try:
            names = list_metrics(
                settings.metrics_source,
                client=client,
                tsdb_cli=settings.tsdb_cli,
                suggest_max=settings.suggest_max,
            )
        except EnumerationError as e:
            raise SystemExit(f"Metric enumeration failed: {e}")
    for name in names:
        print(name)


def cmd_rules(*, config_path: str | None, metric: str | None) -> None:
    config = _load_config(config_path)
    rules = match(metric, config.rules) if metric else list(config.rules)
    print(f"lookback={format_duration(config.lookback)} rules={len(rules)}")
    if metric and not rules:
        print(f"No rule matches {metric}.")
        return
    for r in rules:
        print(f"  - {r.describe()}")


def cmd_inspect(
    *,
    metric: str,
    lookback: str,
    tags: bool,
    host: str | None,
    port: int | None,
) -> None:
    """Print what the store holds for one metric: active days, and optionally tag series."""

    from .aggregation import collect_tag_sets, gather_info
    from .timeutil import truncate_day

    try:
        window = parse_duration(lookback)
    except ValueError as e:
        raise SystemExit(f"Invalid --lookback: {e}")

    now = utcnow()
    start = truncate_day(now - window)
    end = truncate_day(now) + timedelta(days=1)

    with _open_client(host, port) as client:
        try:
            info = gather_info(client, metric, start, end, breadth=_breadth())
        except QueryError as e:
            raise SystemExit(f"Query failed for {metric}: {e}")

        if not info.has_data:
            print(f"No datapoints found for {metric} between {_day(start)} and {_day(end)}.")
            return

        print(
            f"metric={metric} days={len(info.days)} oldest={_day(info.oldest_day)} newest={_day(info.newest_day)} "
            f"first_seen={info.first.isoformat() if info.first else '-'} "
            f"last_seen={info.last.isoformat() if info.last else '-'} "
            f"tag_keys={','.join(sorted(info.tag_keys)) or '-'}"
        )
        for day in info.sorted_days():
            print(f"  {_day(day)} {info.days[day]}")

        if not tags:
            return

        collection = collect_tag_sets(client, info, threshold=settings.tag_batch_threshold, now=now)

    print(f"tag_sets={len(info.tag_sets)} batches={len(collection.batches)} partial={str(collection.partial).lower()}")
    for key in sorted(info.tag_sets):
        series = info.tag_sets[key]
        print(f"  {key} oldest={_day(series.oldest_day)} newest={_day(series.newest_day)} days={len(series.days)}")
    for lo, hi, err in collection.failed:
        print(f"- batch [{_day(lo)}, {_day(hi)}) failed: {err}")


def main() -> None:
    parser = argparse.ArgumentParser(prog="tsdb-expire")
    parser.add_argument("--host", default=None, help="OpenTSDB host (default: TSDB_HOST or localhost).")
    parser.add_argument("--port", "-p", type=int, default=None, help="OpenTSDB port (default: TSDB_PORT or 4242).")
    parser.add_argument("--debug", "-d", action="store_true", help="Log every request sent to the store.")
    parser.add_argument("--version", action="version", version=settings.version)
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Apply retention rules to all metrics (dry-run unless --apply).")
    p_run.add_argument("--config", "-c", default=None, help="Rules file (default: RETENTION_CONFIG or config.toml).")
    p_run.add_argument("--apply", action="store_true", help="Actually delete data (default: dry-run).")
    p_run.add_argument("--now", type=int, default=None, help="Override 'now' unix timestamp (testing).")

    sub.add_parser("list-metrics", help="Print every metric name known to the store.")

    p_rules = sub.add_parser("rules", help="Print loaded retention rules.")
    p_rules.add_argument("--config", "-c", default=None, help="Rules file (default: RETENTION_CONFIG or config.toml).")
    p_rules.add_argument("--metric", default=None, help="Only show rules matching this metric name.")

    p_inspect = sub.add_parser("inspect", help="Show active days (and tag series) of one metric.")
    p_inspect.add_argument("metric", type=str)
    p_inspect.add_argument("--lookback", default="30d", help="How far back to look (default: 30d).")
    p_inspect.add_argument("--tags", action="store_true", help="Also enumerate tag combinations.")

    args = parser.parse_args()
    configure_logging(debug=bool(args.debug))
    setup_otel()
    try:
        if args.cmd == "run":
            cmd_run(
                config_path=args.config,
                host=args.host,
                port=args.port,
                apply=bool(args.apply),
                now=args.now,
            )
        elif args.cmd == "list-metrics":
            cmd_list_metrics(host=args.host, port=args.port)
        elif args.cmd == "rules":
            cmd_rules(config_path=args.config, metric=args.metric)
        elif args.cmd == "inspect":
            cmd_inspect(
                metric=str(args.metric),
                lookback=str(args.lookback),
                tags=bool(args.tags),
                host=args.host,
                port=args.port,
            )
    finally:
        shutdown_otel()


if __name__ == "__main__":
    main()
