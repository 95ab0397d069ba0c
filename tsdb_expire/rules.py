"""Retention rules: TOML loading and glob matching.

A rules file looks like::

    LookBack = "1y"

    [[Rule]]
    Metrics = ["app.*", "web.?.requests"]
    Expire = "14d"
    Cooldown = "7d"
    ZeroOnly = false

Keys are case-insensitive (`zero_only` works too). Durations use the OpenTSDB
grammar (`30d`, `2w`, `1y`, ...). Anything malformed fails the whole load.
"""

from __future__ import annotations

import fnmatch
import re
import tomllib
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .timeutil import format_duration, parse_duration, utcnow


class ConfigurationError(Exception):
    """Raised when the rules file cannot be read or is malformed."""


_KEY_ALIASES = {
    "zeroonly": "zero_only",
    "look_back": "lookback",
    "rules": "rule",
}


def _normalize_keys(data: Any) -> Any:
    if isinstance(data, dict):
        out: dict[str, Any] = {}
        for k, v in data.items():
            key = str(k).lower()
            out[_KEY_ALIASES.get(key, key)] = _normalize_keys(v)
        return out
    if isinstance(data, list):
        return [_normalize_keys(v) for v in data]
    return data


def _duration(v: Any) -> Any:
    if isinstance(v, str):
        return parse_duration(v)
    return v


def _within_calendar(v: timedelta, what: str) -> timedelta:
    try:
        utcnow() - v
    except OverflowError as e:
        raise ValueError(f"{what} reaches back before year 1") from e
    return v


def validate_glob(pattern: str) -> None:
    """Reject patterns fnmatch would otherwise silently treat as literals."""
    if not pattern:
        raise ValueError("empty glob pattern")
    i = 0
    n = len(pattern)
    while i < n:
        if pattern[i] == "[":
            j = i + 1
            if j < n and pattern[j] in "!^":
                j += 1
            if j < n and pattern[j] == "]":
                j += 1
            while j < n and pattern[j] != "]":
                j += 1
            if j >= n:
                raise ValueError(f"unterminated character class in glob {pattern!r}")
            i = j
        i += 1


def compile_glob(pattern: str) -> re.Pattern[str]:
    validate_glob(pattern)
    return re.compile(fnmatch.translate(pattern))


class RuleModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    metrics: list[str] = Field(..., min_length=1)
    expire: timedelta
    cooldown: timedelta = timedelta(0)
    zero_only: bool = False

    @field_validator("expire", "cooldown", mode="before")
    @classmethod
    def parse_durations(cls, v: Any) -> Any:
        return _duration(v)

    @field_validator("metrics")
    @classmethod
    def check_globs(cls, v: list[str]) -> list[str]:
        for pattern in v:
            validate_glob(pattern)
        return v

    @field_validator("expire")
    @classmethod
    def positive_expire(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError("expire must be positive")
        return _within_calendar(v, "expire")

    @field_validator("cooldown")
    @classmethod
    def non_negative_cooldown(cls, v: timedelta) -> timedelta:
        if v < timedelta(0):
            raise ValueError("cooldown must not be negative")
        return _within_calendar(v, "cooldown")


class ConfigModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    lookback: timedelta
    rule: list[RuleModel] = Field(default_factory=list)

    @field_validator("lookback", mode="before")
    @classmethod
    def parse_lookback(cls, v: Any) -> Any:
        return _duration(v)

    @field_validator("lookback")
    @classmethod
    def positive_lookback(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError("lookback must be positive")
        return _within_calendar(v, "lookback")


@dataclass(frozen=True)
class RetentionRule:
    name: str
    patterns: tuple[str, ...]
    expire: timedelta
    cooldown: timedelta = timedelta(0)
    zero_only: bool = False
    globs: tuple[re.Pattern[str], ...] = ()

    @staticmethod
    def build(
        name: str,
        patterns: Iterable[str],
        *,
        expire: timedelta,
        cooldown: timedelta = timedelta(0),
        zero_only: bool = False,
    ) -> "RetentionRule":
        pats = tuple(patterns)
        return RetentionRule(
            name=name,
            patterns=pats,
            expire=expire,
            cooldown=cooldown,
            zero_only=zero_only,
            globs=tuple(compile_glob(p) for p in pats),
        )

    def matches(self, metric: str) -> bool:
        return any(g.match(metric) for g in self.globs)

    def describe(self) -> str:
        parts = [
            f"name={self.name}",
            f"metrics={','.join(self.patterns)}",
            f"expire={format_duration(self.expire)}",
        ]
        if self.cooldown > timedelta(0):
            parts.append(f"cooldown={format_duration(self.cooldown)}")
        if self.zero_only:
            parts.append("zero_only=true")
        return " ".join(parts)


@dataclass(frozen=True)
class RetentionConfig:
    lookback: timedelta
    rules: tuple[RetentionRule, ...]


def parse_rules(data: dict[str, Any]) -> RetentionConfig:
    try:
        model = ConfigModel.model_validate(_normalize_keys(data))
    except ValidationError as e:
        raise ConfigurationError(f"invalid retention config: {e}") from e

    rules = tuple(
        RetentionRule.build(
            r.name or f"rule{idx}",
            r.metrics,
            expire=r.expire,
            cooldown=r.cooldown,
            zero_only=r.zero_only,
        )
        for idx, r in enumerate(model.rule)
    )
    return RetentionConfig(lookback=model.lookback, rules=rules)


def load_rules(path: str | Path) -> RetentionConfig:
    p = Path(path)
    try:
        raw = p.read_bytes()
    except OSError as e:
        raise ConfigurationError(f"cannot read retention config {p}: {e}") from e
    try:
        data = tomllib.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, tomllib.TOMLDecodeError) as e:
        raise ConfigurationError(f"cannot parse retention config {p}: {e}") from e
    return parse_rules(data)


def match(metric: str, rules: Iterable[RetentionRule]) -> list[RetentionRule]:
    """All rules with at least one pattern matching `metric`, in config order."""
    return [r for r in rules if r.matches(metric)]
