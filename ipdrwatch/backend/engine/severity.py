"""
engine/severity.py

Shared severity scoring.

Every rule turns its raw measurement into a tier through the same ratio
policy, so a volume finding at 3x its threshold and a burst finding at 3x
its threshold both read as HIGH:

    r = measured / threshold          (threshold / measured for inverse rules)
    r <  medium_ratio        → LOW
    medium_ratio <= r < high → MEDIUM
    r >= high_ratio          → HIGH
"""

from __future__ import annotations

import math

from ..config import settings
from .models import ConfigurationError, Severity


class SeverityClassifier:
    """Maps a rule's measured value against its threshold to a Severity."""

    def __init__(self, medium_ratio: float = 1.5, high_ratio: float = 3.0) -> None:
        if not 0 < medium_ratio < high_ratio:
            raise ValueError(
                f"need 0 < medium_ratio < high_ratio, got {medium_ratio}, {high_ratio}"
            )
        self.medium_ratio = medium_ratio
        self.high_ratio = high_ratio

    @classmethod
    def from_settings(cls) -> "SeverityClassifier":
        return cls(settings.SEVERITY_MEDIUM_RATIO, settings.SEVERITY_HIGH_RATIO)

    def ratio(
        self,
        rule_id: str,
        measured_value: float,
        threshold: float,
        inverse: bool = False,
    ) -> float:
        if threshold <= 0:
            raise ConfigurationError(
                rule_id, f"threshold must be > 0 to classify severity (got {threshold})"
            )
        if inverse:
            if measured_value <= 0:
                return math.inf
            return threshold / measured_value
        return measured_value / threshold

    def classify(
        self,
        rule_id: str,
        measured_value: float,
        threshold: float,
        inverse: bool = False,
    ) -> Severity:
        r = self.ratio(rule_id, measured_value, threshold, inverse=inverse)
        if r >= self.high_ratio:
            return Severity.HIGH
        if r >= self.medium_ratio:
            return Severity.MEDIUM
        return Severity.LOW

    def __repr__(self) -> str:
        return f"SeverityClassifier(medium>={self.medium_ratio} high>={self.high_ratio})"


def classify(
    rule_id: str,
    measured_value: float,
    threshold: float,
    inverse: bool = False,
) -> Severity:
    """Classify with the ratios currently configured in settings."""
    return SeverityClassifier.from_settings().classify(
        rule_id, measured_value, threshold, inverse=inverse
    )
