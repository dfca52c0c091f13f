"""
backend/serializers.py

JSON-safe views of a DetectionResult for the collaborators that consume it
(dashboard UI, report generator, case store).
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from .engine.models import Anomaly, DetectionResult, DetectionSummary


class AnomalyResponse(BaseModel):
    id: str
    entity: str
    rule: str
    severity: str
    reason: str
    timestamp: datetime
    evidence: list[str]
    measured_value: float
    threshold: float | None = None
    case_id: str | None = None

    @classmethod
    def from_anomaly(cls, a: Anomaly) -> "AnomalyResponse":
        return cls(
            id=a.id,
            entity=a.entity,
            rule=a.rule,
            severity=a.severity.value,
            reason=a.reason,
            timestamp=a.timestamp,
            evidence=list(a.evidence),
            measured_value=a.measured_value,
            threshold=a.threshold,
            case_id=a.case_id,
        )


class EntityCountResponse(BaseModel):
    entity: str
    count: int


class SummaryResponse(BaseModel):
    total: int
    by_rule: dict[str, int]
    by_severity: dict[str, int]
    top_entities: list[EntityCountResponse]

    @classmethod
    def from_summary(cls, s: DetectionSummary) -> "SummaryResponse":
        return cls(
            total=s.total,
            by_rule=dict(s.by_rule),
            by_severity=dict(s.by_severity),
            top_entities=[
                EntityCountResponse(entity=e.entity, count=e.count) for e in s.top_entities
            ],
        )


class RuleErrorResponse(BaseModel):
    rule_id: str
    kind: str
    message: str


class DetectionReportResponse(BaseModel):
    anomalies: list[AnomalyResponse]
    summary: SummaryResponse
    errors: list[RuleErrorResponse] = []
    completed: bool = True
    warnings: list[str] = []
    rules_evaluated: list[str] = []

    @classmethod
    def from_result(cls, result: DetectionResult) -> "DetectionReportResponse":
        return cls(
            anomalies=[AnomalyResponse.from_anomaly(a) for a in result.anomalies],
            summary=SummaryResponse.from_summary(result.summary),
            errors=[
                RuleErrorResponse(rule_id=e.rule_id, kind=e.kind, message=e.message)
                for e in result.errors
            ],
            completed=result.completed,
            warnings=list(result.warnings),
            rules_evaluated=list(result.rules_evaluated),
        )
