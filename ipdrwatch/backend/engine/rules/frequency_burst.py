"""
engine/rules/frequency_burst.py

Frequency Burst Rule.

Detects a single entity opening more than N connections inside any sliding
window of W seconds.

Detection strategy:
    Sort the entity's records by start_time, then sweep two pointers over
    the sorted list. For every right edge the left edge advances until the
    half-open window [t_left, t_left + W) contains t_right. The densest
    window wins; ties keep the earliest window start. O(k log k) per entity
    instead of comparing every pair.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import timezone

from ...models import Record
from ..cancellation import CancellationToken
from ..models import Anomaly
from ..rule_config import FREQUENCY_BURST, FrequencyBurstConfig
from .base import (
    BaseRule,
    anomaly_id,
    case_id_of,
    evidence_ids,
    group_by_entity,
    iter_entities,
)

logger = logging.getLogger(__name__)


def densest_window(times: Sequence[float], window_seconds: float) -> tuple[int, int]:
    """
    Return (left, right) inclusive indices of the densest window over the
    sorted `times`. Ties resolve to the smallest left index.
    """
    best_left, best_right, best_count = 0, 0, 0
    left = 0
    for right, t in enumerate(times):
        while t - times[left] >= window_seconds:
            left += 1
        count = right - left + 1
        if count > best_count:
            best_left, best_right, best_count = left, right, count
    return best_left, best_right


class FrequencyBurstRule(BaseRule):
    """Detects bursts of connections from one entity."""

    rule_id = FREQUENCY_BURST
    config_type = FrequencyBurstConfig
    enabled = True

    def evaluate(
        self,
        records: Sequence[Record],
        config: FrequencyBurstConfig,
        cancel_token: CancellationToken | None = None,
    ) -> list[Anomaly]:
        anomalies: list[Anomaly] = []

        for entity, entity_records in iter_entities(group_by_entity(records), cancel_token):
            if len(entity_records) <= config.max_connections:
                continue

            ordered = sorted(entity_records, key=lambda r: (r.start_time, r.record_id))
            times = [r.start_time.timestamp() for r in ordered]
            left, right = densest_window(times, config.window_seconds)
            count = right - left + 1
            if count <= config.max_connections:
                continue

            burst = ordered[left:right + 1]
            window_start = burst[0].start_time
            anomalies.append(Anomaly(
                id=anomaly_id(
                    self.rule_id, entity, window_start.astimezone(timezone.utc).isoformat()
                ),
                entity=entity,
                rule=self.rule_id,
                severity=self.classifier.classify(
                    self.rule_id, count, config.max_connections
                ),
                reason=(
                    f"Communication burst: {count} connections within "
                    f"{config.window_seconds}s starting {window_start.isoformat()} "
                    f"(threshold {config.max_connections})"
                ),
                timestamp=burst[-1].start_time,
                evidence=evidence_ids(burst),
                measured_value=float(count),
                threshold=float(config.max_connections),
                case_id=case_id_of(burst),
            ))

        logger.debug("frequency_burst: %d finding(s)", len(anomalies))
        return anomalies
