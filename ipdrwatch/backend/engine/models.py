"""
engine/models.py

Data models for the detection engine.

Severity          — 3-level enum shared by every rule
Anomaly           — one finding emitted by a rule
RuleError         — structured per-rule failure returned alongside findings
EntityCount       — one row of the top-entities table
DetectionSummary  — aggregates recomputed on every run
DetectionProgress — value passed to the caller's progress callback
DetectionResult   — everything DetectionEngine.run() hands back
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ConfigurationError(ValueError):
    """A rule parameter cannot be evaluated (e.g. a non-positive threshold)."""

    def __init__(self, rule_id: str, message: str) -> None:
        super().__init__(f"{rule_id}: {message}")
        self.rule_id = rule_id
        self.message = message


class DetectionCancelled(Exception):
    """Raised inside a rule when the caller's CancellationToken is set."""


# ---------------------------------------------------------------------------
# Severity
# ---------------------------------------------------------------------------

class Severity(str, Enum):
    LOW    = "low"
    MEDIUM = "medium"
    HIGH   = "high"

    @property
    def rank(self) -> int:
        """0 for LOW up to 2 for HIGH; used for ordering."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2}


# ---------------------------------------------------------------------------
# Anomaly
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Anomaly:
    """
    A single finding produced by one rule for one entity.

    The id is derived from (rule, entity, window key) only, so running the
    engine twice over the same inputs yields the same ids. The persistence
    collaborator deduplicates on it.
    """

    id: str
    entity: str
    rule: str
    severity: Severity
    reason: str
    """Human-readable explanation quoting the measured value and threshold."""

    timestamp: datetime
    """Instant most representative of the triggering activity."""

    evidence: tuple[str, ...] = ()
    """Record ids that caused the finding, ordered by start time."""

    measured_value: float = 0.0
    threshold: float | None = None
    case_id: str | None = None

    def sort_key(self) -> tuple:
        return (
            -self.severity.rank,
            self.entity,
            self.rule,
            self.timestamp.timestamp(),
            self.id,
        )

    def __repr__(self) -> str:
        return (
            f"Anomaly({self.rule!r} {self.severity.value} "
            f"entity={self.entity!r} id={self.id})"
        )


# ---------------------------------------------------------------------------
# Errors, summary, result
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class RuleError:
    rule_id: str
    kind: str
    """One of: 'configuration' | 'evaluation' | 'cancelled'."""

    message: str


@dataclass(frozen=True, slots=True)
class EntityCount:
    entity: str
    count: int


@dataclass(frozen=True)
class DetectionSummary:
    total: int = 0
    by_rule: dict[str, int] = field(default_factory=dict)
    by_severity: dict[str, int] = field(
        default_factory=lambda: {s.value: 0 for s in Severity}
    )
    top_entities: tuple[EntityCount, ...] = ()


@dataclass(frozen=True, slots=True)
class DetectionProgress:
    rules_completed: int
    total_rules: int
    rule_id: str
    anomalies_found: int
    elapsed_seconds: float


@dataclass
class DetectionResult:
    """
    Output of one DetectionEngine.run() call.

    completed is False when the run was cancelled; anomalies then hold only
    the findings of rules that finished before the signal was observed.
    """

    anomalies: list[Anomaly] = field(default_factory=list)
    summary: DetectionSummary = field(default_factory=DetectionSummary)
    errors: list[RuleError] = field(default_factory=list)
    completed: bool = True
    warnings: list[str] = field(default_factory=list)
    rules_evaluated: list[str] = field(default_factory=list)

    @property
    def failed_rules(self) -> list[str]:
        return [e.rule_id for e in self.errors]

    def __repr__(self) -> str:
        return (
            f"DetectionResult(anomalies={len(self.anomalies)} "
            f"errors={len(self.errors)} completed={self.completed})"
        )
