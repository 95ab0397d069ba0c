from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from tsdb_expire.rules import ConfigurationError, RetentionRule, load_rules, match, parse_rules


def _write(tmp_path: Path, text: str) -> Path:
    p = tmp_path / "config.toml"
    p.write_text(text, encoding="utf-8")
    return p


def test_load_rules_accepts_capitalised_keys(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """
LookBack = "1y"

[[Rule]]
Metrics = ["app.*", "web.?.requests"]
Expire = "14d"
Cooldown = "7d"
ZeroOnly = true

[[Rule]]
Name = "db"
Metrics = ["db.[ab]*"]
Expire = "90d"
""",
    )
    cfg = load_rules(path)
    assert cfg.lookback == timedelta(days=365)
    assert len(cfg.rules) == 2

    first, second = cfg.rules
    assert first.name == "rule0"
    assert first.patterns == ("app.*", "web.?.requests")
    assert first.expire == timedelta(days=14)
    assert first.cooldown == timedelta(days=7)
    assert first.zero_only is True

    assert second.name == "db"
    assert second.cooldown == timedelta(0)
    assert second.zero_only is False


def test_load_rules_accepts_snake_case_keys(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """
lookback = "30d"

[[rule]]
metrics = ["app.*"]
expire = "14d"
zero_only = true
""",
    )
    cfg = load_rules(path)
    assert cfg.rules[0].zero_only is True


def test_glob_matching_scenario() -> None:
    rule = RetentionRule.build("apps", ["app.*"], expire=timedelta(days=14))
    assert match("app.requests", [rule]) == [rule]
    assert match("db.requests", [rule]) == []


def test_glob_is_case_sensitive_and_supports_classes() -> None:
    rule = RetentionRule.build("r", ["web.?.hits", "db.[ab]*"], expire=timedelta(days=1))
    assert rule.matches("web.1.hits")
    assert not rule.matches("web.10.hits")
    assert rule.matches("db.a.size")
    assert rule.matches("db.bytes")
    assert not rule.matches("db.c.size")
    assert not rule.matches("WEB.1.hits")


def test_every_matching_rule_applies_in_config_order() -> None:
    broad = RetentionRule.build("broad", ["*"], expire=timedelta(days=365))
    narrow = RetentionRule.build("narrow", ["app.requests"], expire=timedelta(days=14))
    other = RetentionRule.build("other", ["db.*"], expire=timedelta(days=30))
    assert match("app.requests", [broad, narrow, other]) == [broad, narrow]


@pytest.mark.parametrize(
    "rule_body",
    [
        'Metrics = ["app.[abc"]\nExpire = "14d"',
        'Metrics = [""]\nExpire = "14d"',
        'Metrics = []\nExpire = "14d"',
        'Metrics = "app.*"\nExpire = "14d"',
        'Metrics = ["app.*"]\nExpire = "fortnight"',
        'Metrics = ["app.*"]\nExpire = "0d"',
        'Metrics = ["app.*"]\nExpire = "14d"\nCooldown = "soon"',
        'Metrics = ["app.*"]\nExpire = "14d"\nTypo = true',
        'Metrics = ["app.*"]',
        'Metrics = ["app.*"]\nExpire = "3000y"',
        'Metrics = ["app.*"]\nExpire = "99999999999d"',
        'Metrics = ["app.*"]\nExpire = "14d"\nCooldown = "4000y"',
    ],
)
def test_malformed_rule_fails_whole_load(tmp_path: Path, rule_body: str) -> None:
    path = _write(
        tmp_path,
        f"""
LookBack = "30d"

[[Rule]]
Metrics = ["ok.*"]
Expire = "7d"

[[Rule]]
{rule_body}
""",
    )
    with pytest.raises(ConfigurationError):
        load_rules(path)


def test_missing_lookback_is_rejected() -> None:
    with pytest.raises(ConfigurationError, match="lookback"):
        parse_rules({"Rule": [{"Metrics": ["a.*"], "Expire": "1d"}]})


def test_unreadable_or_invalid_toml(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="cannot read"):
        load_rules(tmp_path / "missing.toml")

    bad = _write(tmp_path, "LookBack = ")
    with pytest.raises(ConfigurationError, match="cannot parse"):
        load_rules(bad)


def test_describe_lists_rule_parameters() -> None:
    rule = RetentionRule.build(
        "apps",
        ["app.*"],
        expire=timedelta(days=14),
        cooldown=timedelta(days=3),
        zero_only=True,
    )
    assert rule.describe() == "name=apps metrics=app.* expire=14d cooldown=3d zero_only=true"


def test_lookback_before_year_one_is_rejected() -> None:
    with pytest.raises(ConfigurationError, match="year 1"):
        parse_rules({"LookBack": "10000y", "Rule": [{"Metrics": ["a.*"], "Expire": "1d"}]})
