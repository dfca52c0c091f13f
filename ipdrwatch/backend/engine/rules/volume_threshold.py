"""
engine/rules/volume_threshold.py

Volume Threshold Rule.

Flags entities whose total bytes_transferred exceeds a threshold, either
over the whole observation period (default) or per fixed bucket of
`bucket_seconds` keyed on record start time. One grouping pass: O(n).
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timezone

from ...models import Record
from ..cancellation import CancellationToken
from ..models import Anomaly
from ..rule_config import VOLUME_THRESHOLD, VolumeThresholdConfig
from .base import (
    BaseRule,
    anomaly_id,
    case_id_of,
    evidence_ids,
    format_bytes,
    group_by_entity,
    iter_entities,
)

logger = logging.getLogger(__name__)

_WHOLE_PERIOD = "all"


class VolumeThresholdRule(BaseRule):
    """Detects entities moving more data than the configured threshold."""

    rule_id = VOLUME_THRESHOLD
    config_type = VolumeThresholdConfig
    enabled = True

    def evaluate(
        self,
        records: Sequence[Record],
        config: VolumeThresholdConfig,
        cancel_token: CancellationToken | None = None,
    ) -> list[Anomaly]:
        anomalies: list[Anomaly] = []

        for entity, entity_records in iter_entities(group_by_entity(records), cancel_token):
            for bucket_key, bucket in self._buckets(entity_records, config):
                total = sum(r.bytes_transferred for r in bucket)
                if total <= config.threshold:
                    continue
                anomalies.append(self._make_anomaly(entity, bucket_key, bucket, total, config))

        logger.debug("volume_threshold: %d finding(s)", len(anomalies))
        return anomalies

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _buckets(
        records: list[Record], config: VolumeThresholdConfig
    ) -> list[tuple[str, list[Record]]]:
        if config.bucket_seconds is None:
            return [(_WHOLE_PERIOD, records)]

        size = config.bucket_seconds
        buckets: dict[int, list[Record]] = {}
        for r in records:
            index = int(r.start_time.timestamp()) // size
            buckets.setdefault(index, []).append(r)
        return [
            (datetime.fromtimestamp(i * size, tz=timezone.utc).isoformat(), buckets[i])
            for i in sorted(buckets)
        ]

    def _make_anomaly(
        self,
        entity: str,
        bucket_key: str,
        bucket: list[Record],
        total: int,
        config: VolumeThresholdConfig,
    ) -> Anomaly:
        period = (
            "over the observation period"
            if bucket_key == _WHOLE_PERIOD
            else f"in {config.bucket_seconds}s bucket starting {bucket_key}"
        )
        return Anomaly(
            id=anomaly_id(self.rule_id, entity, bucket_key),
            entity=entity,
            rule=self.rule_id,
            severity=self.classifier.classify(self.rule_id, total, config.threshold),
            reason=(
                f"High data volume: {format_bytes(total)} ({total} bytes) {period} "
                f"exceeds threshold {format_bytes(config.threshold)} "
                f"({config.threshold} bytes)"
            ),
            timestamp=max(r.end_time for r in bucket),
            evidence=evidence_ids(bucket),
            measured_value=float(total),
            threshold=float(config.threshold),
            case_id=case_id_of(bucket),
        )
