"""
engine/summary.py

Aggregates computed from a run's sorted anomaly list.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence

from .models import Anomaly, DetectionSummary, EntityCount, Severity


def top_entities(anomalies: Sequence[Anomaly], limit: int) -> tuple[EntityCount, ...]:
    """Entities with the most findings; ties broken by entity ascending."""
    counts = Counter(a.entity for a in anomalies)
    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return tuple(EntityCount(entity=e, count=c) for e, c in ranked[:limit])


def build_summary(anomalies: Sequence[Anomaly], top_n: int = 5) -> DetectionSummary:
    by_rule = Counter(a.rule for a in anomalies)
    by_severity = {s.value: 0 for s in Severity}
    for a in anomalies:
        by_severity[a.severity.value] += 1

    return DetectionSummary(
        total=len(anomalies),
        by_rule=dict(sorted(by_rule.items())),
        by_severity=by_severity,
        top_entities=top_entities(anomalies, top_n),
    )
