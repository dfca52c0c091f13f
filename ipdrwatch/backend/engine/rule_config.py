"""
engine/rule_config.py

User-editable rule configuration.

One pydantic model per rule type, joined into a discriminated union on
`id`. Parameters are validated when a config is built, so rules may assume
positive thresholds and a well-formed window at evaluation time.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import time
from typing import Annotated, Any, Literal, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from ..config import settings

LATE_NIGHT_ACTIVITY = "late_night_activity"
VOLUME_THRESHOLD = "volume_threshold"
FREQUENCY_BURST = "frequency_burst"
CROSS_OPERATOR = "cross_operator"


class BaseRuleConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    name: str = ""
    description: str = ""
    enabled: bool = True


class LateNightConfig(BaseRuleConfig):
    id: Literal["late_night_activity"] = LATE_NIGHT_ACTIVITY
    name: str = "Late Night Activity"
    description: str = "Communication activity during unusual hours (default 00:00-05:00)"

    window_start: time = time(0, 0)
    window_end: time = time(5, 0)
    """May be earlier than window_start: the window then wraps past midnight."""

    timezone: str = Field(default_factory=lambda: settings.DETECTION_TIMEZONE)

    volume_threshold: int | None = Field(default=None, gt=0)
    """Bytes per night. Unset: the rule fires on presence alone at LOW."""

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {v!r}") from exc
        return v

    @model_validator(mode="after")
    def check_window(self) -> "LateNightConfig":
        if self.window_start == self.window_end:
            raise ValueError("window_start and window_end must differ")
        return self

    @property
    def wraps_midnight(self) -> bool:
        return self.window_end < self.window_start


class VolumeThresholdConfig(BaseRuleConfig):
    id: Literal["volume_threshold"] = VOLUME_THRESHOLD
    name: str = "High Data Volume"
    description: str = "Total bytes per entity above a threshold"

    threshold: int = Field(default=1_000_000, gt=0)
    bucket_seconds: int | None = Field(default=None, gt=0)
    """Fixed bucket length; None sums over the whole observation period."""


class FrequencyBurstConfig(BaseRuleConfig):
    id: Literal["frequency_burst"] = FREQUENCY_BURST
    name: str = "Communication Burst"
    description: str = "High-frequency communication in a short sliding window"

    max_connections: int = Field(default=10, gt=0)
    window_seconds: int = Field(default=300, gt=0)


class CrossOperatorConfig(BaseRuleConfig):
    id: Literal["cross_operator"] = CROSS_OPERATOR
    name: str = "Cross-Operator Activity"
    description: str = "Same entity active across multiple operators"

    min_operators: int = Field(default=2, ge=2)


RuleConfig = Annotated[
    Union[LateNightConfig, VolumeThresholdConfig, FrequencyBurstConfig, CrossOperatorConfig],
    Field(discriminator="id"),
]

_RULE_CONFIG_ADAPTER: TypeAdapter[RuleConfig] = TypeAdapter(RuleConfig)


def parse_rule_config(raw: Mapping[str, Any]) -> BaseRuleConfig:
    """Validate one raw mapping. Raises pydantic.ValidationError."""
    return _RULE_CONFIG_ADAPTER.validate_python(dict(raw))


def default_rule_configs() -> list[BaseRuleConfig]:
    return [
        LateNightConfig(),
        VolumeThresholdConfig(),
        FrequencyBurstConfig(),
        CrossOperatorConfig(),
    ]


def merge_rule_configs(
    overrides: Iterable[Mapping[str, Any]] | None = None,
) -> list[BaseRuleConfig]:
    """
    Apply partial user overrides on top of the default rule set.

    Each override must carry the `id` of the rule it edits; unknown ids are
    rejected with ValueError. The merged result is validated again, so an
    override that breaks a constraint raises pydantic.ValidationError.
    """
    merged: dict[str, dict[str, Any]] = {
        cfg.id: cfg.model_dump() for cfg in default_rule_configs()
    }
    for override in overrides or ():
        rule_id = override.get("id")
        if rule_id not in merged:
            raise ValueError(f"no default rule with id {rule_id!r}")
        merged[rule_id].update(override)
    return [parse_rule_config(raw) for raw in merged.values()]
