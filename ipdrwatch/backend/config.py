"""
backend/config.py

Engine configuration via Pydantic Settings.
All values can be overridden with environment variables or a .env file.

Quick start — create a .env file in your project root:
    DETECTION_TIMEZONE=Asia/Kolkata
    SEVERITY_MEDIUM_RATIO=1.5
    SEVERITY_HIGH_RATIO=3.0
    MAX_WORKERS=4
"""

from __future__ import annotations

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Civil timezone used by time-of-day rules unless a rule overrides it
    DETECTION_TIMEZONE: str = "Asia/Kolkata"

    # Severity tiers: ratio of measured value to threshold
    SEVERITY_MEDIUM_RATIO: float = 1.5
    SEVERITY_HIGH_RATIO: float = 3.0

    # Summary
    TOP_ENTITIES_LIMIT: int = 5

    # Evaluation
    PARALLEL_EVALUATION: bool = True
    MAX_WORKERS: int = 4
    RULE_SLOW_WARNING_MS: float = 500.0
    CANCEL_CHECK_INTERVAL: int = 1_000   # entities between cancellation checks

    # Logging
    LOG_LEVEL: str = "INFO"

    @field_validator("DETECTION_TIMEZONE")
    @classmethod
    def check_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {v!r}") from exc
        return v

    @field_validator("MAX_WORKERS", "TOP_ENTITIES_LIMIT", "CANCEL_CHECK_INTERVAL")
    @classmethod
    def check_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalise_log_level(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def check_severity_ratios(self) -> "Settings":
        if not 0 < self.SEVERITY_MEDIUM_RATIO < self.SEVERITY_HIGH_RATIO:
            raise ValueError(
                "severity ratios must satisfy 0 < SEVERITY_MEDIUM_RATIO < SEVERITY_HIGH_RATIO"
            )
        return self


settings = Settings()
