"""
engine/rules/base.py

Abstract base class that all detection rules must implement, plus the
helpers every rule shares: grouping by entity, deterministic anomaly ids
and evidence ordering.
"""

from __future__ import annotations

import hashlib
import json
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence

from ...config import settings
from ...models import Record
from ..cancellation import CancellationToken
from ..models import Anomaly
from ..rule_config import BaseRuleConfig
from ..severity import SeverityClassifier


class BaseRule(ABC):
    """
    Contract that every detection rule must satisfy.

    Class-level attributes:
        rule_id     — matches the `id` of the config this rule evaluates
        config_type — pydantic model the config must be an instance of
        enabled     — False for rules that must not be registered

    evaluate() is pure: it reads the record tuple, never mutates it, and
    keeps nothing after returning. It may raise ConfigurationError or
    DetectionCancelled; the engine turns both into RuleError values.
    """

    rule_id: str = ""
    config_type: type[BaseRuleConfig] = BaseRuleConfig
    enabled: bool = True

    def __init__(self, classifier: SeverityClassifier | None = None) -> None:
        self.classifier = classifier or SeverityClassifier.from_settings()

    @abstractmethod
    def evaluate(
        self,
        records: Sequence[Record],
        config: BaseRuleConfig,
        cancel_token: CancellationToken | None = None,
    ) -> list[Anomaly]:
        """Return candidate anomalies for this rule alone."""
        ...

    def __repr__(self) -> str:
        return f"<Rule:{self.rule_id} enabled={self.enabled}>"


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def group_by_entity(records: Iterable[Record]) -> dict[str, list[Record]]:
    groups: dict[str, list[Record]] = {}
    for record in records:
        groups.setdefault(record.entity, []).append(record)
    return groups


def iter_entities(
    groups: dict[str, list[Record]],
    cancel_token: CancellationToken | None,
):
    """
    Yield (entity, records) in entity order, polling the cancellation
    token every settings.CANCEL_CHECK_INTERVAL entities.
    """
    interval = settings.CANCEL_CHECK_INTERVAL
    for i, entity in enumerate(sorted(groups)):
        if cancel_token is not None and i % interval == 0:
            cancel_token.raise_if_cancelled()
        yield entity, groups[entity]


def anomaly_id(rule_id: str, entity: str, window_key: str) -> str:
    """Deterministic id: same rule, entity and window → same id."""
    key_data = {"rule": rule_id, "entity": entity, "window": window_key}
    raw = json.dumps(key_data, sort_keys=True).encode()
    return "anom_" + hashlib.sha256(raw).hexdigest()[:24]


def evidence_ids(records: Iterable[Record]) -> tuple[str, ...]:
    ordered = sorted(records, key=lambda r: (r.start_time, r.record_id))
    return tuple(r.record_id for r in ordered)


def case_id_of(records: Iterable[Record]) -> str | None:
    for r in records:
        if r.case_id:
            return r.case_id
    return None


def format_bytes(num_bytes: float) -> str:
    """1024-based human-readable size, e.g. 9.54 MB."""
    if num_bytes <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    value = float(num_bytes)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{value:.2f}".rstrip("0").rstrip(".") + f" {units[i]}"
