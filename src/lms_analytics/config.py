# ABOUTME: Engine configuration: classification thresholds, insight rules, store timeout and cache sizing.
# ABOUTME: Loads YAML files into frozen dataclasses and rejects keys it does not know.

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from src.common.errors import ConfigError

from .classification import ClassificationConfig
from .insights import InsightConfig


@dataclass(frozen=True)
class EngineConfig:
    classification: ClassificationConfig = field(default_factory=ClassificationConfig)
    insights: InsightConfig = field(default_factory=InsightConfig)
    store_timeout_seconds: float = 10.0
    # fetches that time out keep their worker until the store answers
    store_workers: int = 4
    cache_ttl_seconds: float = 300.0
    cache_maxsize: int = 256
    dropout_inactivity_days: int = 14
    churn_window_days: int = 30
    active_window_days: int = 30
    # admin monthly revenue covers 12 months for "1year", this many otherwise
    revenue_months: int = 6
    top_courses_limit: int = 20


DEFAULT_CONFIG = EngineConfig()


def load_config(path: Optional[Path] = None) -> EngineConfig:
    """Read a YAML config; ``None`` returns the defaults."""

    if path is None:
        return DEFAULT_CONFIG
    try:
        with open(path) as f:
            cfg = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigError(f"Cannot read config {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    return config_from_mapping(cfg or {})


def config_from_mapping(cfg: Mapping[str, Any]) -> EngineConfig:
    if not isinstance(cfg, Mapping):
        raise ConfigError("Config root must be a mapping")
    values = dict(cfg)
    classification = _section(ClassificationConfig, values.pop("classification", None) or {}, "classification")
    insights = _section(InsightConfig, values.pop("insights", None) or {}, "insights")
    engine = _section(EngineConfig, values, "engine", skip={"classification", "insights"})
    return replace(engine, classification=classification, insights=insights)


def _section(cls, values: Mapping[str, Any], name: str, skip=frozenset()):
    if not isinstance(values, Mapping):
        raise ConfigError(f"Section '{name}' must be a mapping")
    known = {f.name for f in fields(cls)} - set(skip)
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"Unknown key(s) in '{name}': {', '.join(map(str, unknown))}")
    kwargs = dict(values)
    if "engagement_weights" in kwargs:
        weights = tuple(float(w) for w in kwargs["engagement_weights"])
        if len(weights) != 4:
            raise ConfigError("engagement_weights needs exactly four numbers")
        kwargs["engagement_weights"] = weights
    try:
        return cls(**kwargs)
    except TypeError as exc:
        raise ConfigError(f"Invalid '{name}' section: {exc}") from exc
