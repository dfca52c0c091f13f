"""
engine/rules/cross_operator.py

Cross-Operator Activity Rule.

Flags an entity that shows up in the exports of at least `min_operators`
distinct telecom operators. Records without an operator are ignored.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from ...models import Record
from ..cancellation import CancellationToken
from ..models import Anomaly
from ..rule_config import CROSS_OPERATOR, CrossOperatorConfig
from .base import (
    BaseRule,
    anomaly_id,
    case_id_of,
    evidence_ids,
    group_by_entity,
    iter_entities,
)

logger = logging.getLogger(__name__)


class CrossOperatorRule(BaseRule):
    rule_id = CROSS_OPERATOR
    config_type = CrossOperatorConfig
    enabled = True

    def evaluate(
        self,
        records: Sequence[Record],
        config: CrossOperatorConfig,
        cancel_token: CancellationToken | None = None,
    ) -> list[Anomaly]:
        with_operator = (r for r in records if r.operator)
        anomalies: list[Anomaly] = []

        for entity, entity_records in iter_entities(group_by_entity(with_operator), cancel_token):
            operators = sorted({r.operator for r in entity_records})
            if len(operators) < config.min_operators:
                continue
            anomalies.append(Anomaly(
                id=anomaly_id(self.rule_id, entity, ",".join(operators)),
                entity=entity,
                rule=self.rule_id,
                severity=self.classifier.classify(
                    self.rule_id, len(operators), config.min_operators
                ),
                reason=(
                    f"Entity active across {len(operators)} operators: "
                    f"{', '.join(operators)} (threshold {config.min_operators})"
                ),
                timestamp=max(r.end_time for r in entity_records),
                evidence=evidence_ids(entity_records),
                measured_value=float(len(operators)),
                threshold=float(config.min_operators),
                case_id=case_id_of(entity_records),
            ))

        logger.debug("cross_operator: %d finding(s)", len(anomalies))
        return anomalies
