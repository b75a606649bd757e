# backend/config.py
from __future__ import annotations

import os
import re
from datetime import timedelta
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

CONFIG_PATH = os.environ.get("TRUSTWATCH_CONFIG", "trustwatch.yaml")

MIN_REFRESH = timedelta(seconds=30)

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|us|µs|ns|h|m|s)")
_DURATION_UNITS = {
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 1e-3,
    "us": 1e-6,
    "µs": 1e-6,
    "ns": 1e-9,
}


class ConfigError(ValueError):
    pass


def parse_duration(value: Any) -> timedelta:
    """
    Accepts Go-style durations ("720h", "1h30m", "45s"), plain seconds
    (int/float or numeric string) or a timedelta.
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)

    s = str(value or "").strip()
    if not s:
        raise ValueError("empty duration")
    try:
        return timedelta(seconds=float(s))
    except ValueError:
        pass

    sign = 1.0
    if s[0] in "+-":
        sign = -1.0 if s[0] == "-" else 1.0
        s = s[1:]

    pos = 0
    total = 0.0
    for m in _DURATION_PART_RE.finditer(s):
        if m.start() != pos:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if pos != len(s) or pos == 0:
        raise ValueError(f"invalid duration: {value!r}")
    return timedelta(seconds=sign * total)


class _Base(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ExternalTarget(_Base):
    # https://host:port or tcp://host:port?sni=name
    url: str


class FileBundle(_Base):
    path: str
    hostname: str = ""
    name: str = ""


class Config(_Base):
    listen_addr: str = ":8080"
    cluster_name: str = ""
    refresh_every: timedelta = timedelta(minutes=2)
    warn_before: timedelta = timedelta(hours=720)
    crit_before: timedelta = timedelta(hours=336)
    check_revocation: bool = False
    external: List[ExternalTarget] = Field(default_factory=list)
    files: List[FileBundle] = Field(default_factory=list)

    @field_validator("refresh_every", "warn_before", "crit_before", mode="before")
    @classmethod
    def _duration(cls, v: Any) -> timedelta:
        return parse_duration(v)

    @model_validator(mode="after")
    def _validate(self) -> "Config":
        if self.warn_before <= timedelta(0):
            raise ValueError(f"warnBefore must be positive, got {self.warn_before}")
        if self.crit_before <= timedelta(0):
            raise ValueError(f"critBefore must be positive, got {self.crit_before}")
        if self.crit_before >= self.warn_before:
            raise ValueError(
                f"critBefore ({self.crit_before}) must be less than warnBefore ({self.warn_before})"
            )
        if self.refresh_every < MIN_REFRESH:
            raise ValueError(f"refreshEvery must be at least 30s, got {self.refresh_every}")
        if not self.listen_addr:
            raise ValueError("listenAddr must not be empty")
        for i, t in enumerate(self.external):
            if not t.url.strip():
                raise ValueError(f"external[{i}].url must not be empty")
        return self


def defaults() -> Config:
    return Config()


def config_from_dict(data: Optional[dict]) -> Config:
    try:
        return Config.model_validate(data or {})
    except ValidationError as e:
        raise ConfigError(f"config validation: {e}") from e


def load_config(path: Optional[str] = None) -> Config:
    """Read a YAML config file and merge it over the defaults."""
    path = path or CONFIG_PATH
    with open(path, "r", encoding="utf-8") as fh:
        try:
            data = yaml.safe_load(fh)
        except yaml.YAMLError as e:
            raise ConfigError(f"config {path}: {e}") from e
    if data is not None and not isinstance(data, dict):
        raise ConfigError(f"config {path}: top level must be a mapping")
    return config_from_dict(data)
