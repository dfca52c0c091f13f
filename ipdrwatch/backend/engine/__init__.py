"""engine/__init__.py"""
from .cancellation import CancellationToken
from .engine import DetectionEngine
from .models import (
    Anomaly,
    ConfigurationError,
    DetectionCancelled,
    DetectionProgress,
    DetectionResult,
    DetectionSummary,
    EntityCount,
    RuleError,
    Severity,
)
from .rule_config import (
    CrossOperatorConfig,
    FrequencyBurstConfig,
    LateNightConfig,
    VolumeThresholdConfig,
    default_rule_configs,
    merge_rule_configs,
)
from .severity import SeverityClassifier, classify

__all__ = [
    "DetectionEngine",
    "CancellationToken",
    "Anomaly",
    "ConfigurationError",
    "DetectionCancelled",
    "DetectionProgress",
    "DetectionResult",
    "DetectionSummary",
    "EntityCount",
    "RuleError",
    "Severity",
    "SeverityClassifier",
    "classify",
    "LateNightConfig",
    "VolumeThresholdConfig",
    "FrequencyBurstConfig",
    "CrossOperatorConfig",
    "default_rule_configs",
    "merge_rule_configs",
]
