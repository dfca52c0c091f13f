"""
tests/test_engine.py

Tests for the DetectionEngine orchestrator.
Verifies plugin loading, disabled-rule exclusion, deterministic ordering,
per-rule error isolation, empty input, cancellation and progress reporting.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from ipdrwatch.backend.engine.cancellation import CancellationToken
from ipdrwatch.backend.engine.engine import DetectionEngine
from ipdrwatch.backend.engine.models import Anomaly, DetectionProgress, Severity
from ipdrwatch.backend.engine.rule_config import (
    BaseRuleConfig,
    FrequencyBurstConfig,
    VolumeThresholdConfig,
)
from ipdrwatch.backend.engine.rules.base import BaseRule, anomaly_id
from ipdrwatch.backend.metrics import METRICS, Counter
from ipdrwatch.backend.models import Record

BASE = datetime(2024, 4, 2, 10, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def rec(record_id: str, entity: str, offset_seconds: int = 0, bytes_transferred: int = 100) -> Record:
    start = BASE + timedelta(seconds=offset_seconds)
    return Record(
        record_id=record_id,
        entity=entity,
        counterpart="192.0.2.1",
        protocol="TCP",
        start_time=start,
        end_time=start + timedelta(seconds=10),
        bytes_transferred=bytes_transferred,
    )


def sample_records() -> list[Record]:
    records = [rec(f"a{i}", "A", offset_seconds=i * 5, bytes_transferred=150) for i in range(8)]
    records += [rec(f"b{i}", "B", offset_seconds=i * 5, bytes_transferred=100) for i in range(3)]
    records += [rec("c0", "C", bytes_transferred=5_000)]
    return records


def sample_configs(**enabled: bool) -> list[BaseRuleConfig]:
    return [
        VolumeThresholdConfig(threshold=1_000, enabled=enabled.get("volume_threshold", True)),
        FrequencyBurstConfig(
            max_connections=5, window_seconds=300,
            enabled=enabled.get("frequency_burst", True),
        ),
    ]


# ---------------------------------------------------------------------------
# Inline test rules (bypass plugin discovery)
# ---------------------------------------------------------------------------

class AlwaysFireRule(BaseRule):
    rule_id = "always_fire"
    config_type = BaseRuleConfig

    def evaluate(self, records, config, cancel_token=None):
        return [Anomaly(
            id=anomaly_id(self.rule_id, "1.2.3.4", "all"),
            entity="1.2.3.4",
            rule=self.rule_id,
            severity=Severity.HIGH,
            reason="always fires",
            timestamp=BASE,
        )]


class RaisingRule(BaseRule):
    rule_id = "raising_rule"
    config_type = BaseRuleConfig

    def evaluate(self, records, config, cancel_token=None):
        raise RuntimeError("intentional error in rule")


class CancellingRule(BaseRule):
    """Simulates the caller cancelling while this rule is running."""

    rule_id = "cancelling_rule"
    config_type = BaseRuleConfig

    def __init__(self, token: CancellationToken) -> None:
        super().__init__()
        self.token = token

    def evaluate(self, records, config, cancel_token=None):
        self.token.cancel()
        cancel_token.raise_if_cancelled()
        return []


def engine_with(*rules: BaseRule, parallel: bool = False) -> DetectionEngine:
    engine = DetectionEngine(parallel=parallel)
    engine.rules = {r.rule_id: r for r in rules}
    return engine


# ---------------------------------------------------------------------------
# Plugin loading
# ---------------------------------------------------------------------------

class TestEnginePluginLoading:

    def test_all_rules_loaded(self):
        engine = DetectionEngine()
        assert sorted(engine.rules) == [
            "cross_operator", "frequency_burst", "late_night_activity", "volume_threshold",
        ]

    def test_rules_share_engine_classifier(self):
        engine = DetectionEngine()
        assert all(r.classifier is engine.classifier for r in engine.rules.values())


# ---------------------------------------------------------------------------
# run() — merge, order, summary
# ---------------------------------------------------------------------------

class TestEngineRun:

    def test_findings_from_all_enabled_rules(self):
        result = DetectionEngine().run(sample_records(), sample_configs())
        assert result.completed
        assert result.errors == []
        assert result.rules_evaluated == ["frequency_burst", "volume_threshold"]
        assert {(a.entity, a.rule) for a in result.anomalies} == {
            ("A", "volume_threshold"),
            ("A", "frequency_burst"),
            ("C", "volume_threshold"),
        }

    def test_sorted_by_severity_entity_rule(self):
        result = DetectionEngine().run(sample_records(), sample_configs())
        keys = [(-a.severity.rank, a.entity, a.rule) for a in result.anomalies]
        assert keys == sorted(keys)
        # C at 5x threshold is the only HIGH finding
        assert result.anomalies[0].entity == "C"
        assert result.anomalies[0].severity == Severity.HIGH

    def test_deterministic_across_runs(self):
        engine = DetectionEngine()
        first = engine.run(sample_records(), sample_configs())
        second = engine.run(sample_records(), sample_configs())
        assert [a.id for a in first.anomalies] == [a.id for a in second.anomalies]
        assert first.anomalies == second.anomalies
        assert first.summary == second.summary

    def test_parallel_and_sequential_agree(self):
        par = DetectionEngine(parallel=True, max_workers=4).run(sample_records(), sample_configs())
        seq = DetectionEngine(parallel=False).run(sample_records(), sample_configs())
        assert par.anomalies == seq.anomalies
        assert par.summary == seq.summary

    def test_summary_matches_anomalies(self):
        result = DetectionEngine().run(sample_records(), sample_configs())
        assert result.summary.total == len(result.anomalies)
        assert result.summary.by_rule == {"frequency_burst": 1, "volume_threshold": 2}
        assert result.summary.top_entities[0].entity == "A"

    def test_inputs_not_mutated(self):
        records = sample_records()
        configs = sample_configs()
        before_records = list(records)
        before_configs = [c.model_dump() for c in configs]
        DetectionEngine().run(records, configs)
        assert records == before_records
        assert [c.model_dump() for c in configs] == before_configs

    def test_accepts_generator_of_records(self):
        result = DetectionEngine().run((r for r in sample_records()), sample_configs())
        assert result.summary.total == 3


# ---------------------------------------------------------------------------
# Disabled rules
# ---------------------------------------------------------------------------

class TestDisabledRules:

    def test_disabled_rule_removed_from_findings_and_aggregates(self):
        engine = DetectionEngine()
        full = engine.run(sample_records(), sample_configs())
        reduced = engine.run(sample_records(), sample_configs(frequency_burst=False))

        assert all(a.rule != "frequency_burst" for a in reduced.anomalies)
        assert "frequency_burst" not in reduced.summary.by_rule
        assert reduced.rules_evaluated == ["volume_threshold"]
        # other rule's findings unchanged
        assert [a for a in full.anomalies if a.rule == "volume_threshold"] == reduced.anomalies

    def test_disabled_rule_never_invoked(self):
        engine = engine_with(RaisingRule())
        result = engine.run(sample_records(), [{"id": "raising_rule", "enabled": False}])
        assert result.errors == []
        assert result.rules_evaluated == []

    def test_disabled_mapping_skipped_before_validation(self):
        result = DetectionEngine().run(
            sample_records(), [{"id": "volume_threshold", "enabled": False, "threshold": 0}]
        )
        assert result.errors == []

    @pytest.mark.parametrize("flag", [0, "0", "false", "False"])
    def test_disabled_mapping_with_coerced_flag_skipped(self, flag):
        result = DetectionEngine(parallel=False).run(
            sample_records(), [{"id": "volume_threshold", "threshold": 10, "enabled": flag}]
        )
        assert result.anomalies == []
        assert result.rules_evaluated == []
        assert result.errors == []
        assert result.summary.by_rule == {}
        assert result.errors == []


# ---------------------------------------------------------------------------
# Error isolation
# ---------------------------------------------------------------------------

class TestEngineErrorIsolation:

    def test_raising_rule_reported_not_propagated(self):
        engine = engine_with(RaisingRule(), AlwaysFireRule())
        result = engine.run(
            sample_records(),
            [BaseRuleConfig(id="raising_rule"), BaseRuleConfig(id="always_fire")],
        )
        assert [a.rule for a in result.anomalies] == ["always_fire"]
        assert len(result.errors) == 1
        assert result.errors[0].rule_id == "raising_rule"
        assert result.errors[0].kind == "evaluation"
        assert "intentional error" in result.errors[0].message
        assert result.completed

    def test_zero_threshold_reported_per_rule(self):
        bad = VolumeThresholdConfig.model_construct(threshold=0)
        result = DetectionEngine().run(
            sample_records(), [bad, FrequencyBurstConfig(max_connections=5)]
        )
        assert [(e.rule_id, e.kind) for e in result.errors] == [("volume_threshold", "configuration")]
        assert [a.rule for a in result.anomalies] == ["frequency_burst"]

    def test_invalid_raw_mapping_reported(self):
        result = DetectionEngine().run(
            sample_records(),
            [
                {"id": "volume_threshold", "threshold": -10},
                {"id": "frequency_burst", "max_connections": 5},
            ],
        )
        assert [(e.rule_id, e.kind) for e in result.errors] == [("volume_threshold", "configuration")]
        assert "threshold" in result.errors[0].message
        assert result.rules_evaluated == ["frequency_burst"]

    def test_unknown_rule_id_reported(self):
        result = DetectionEngine().run(sample_records(), [{"id": "moon_phase"}])
        assert result.errors[0].rule_id == "moon_phase"
        assert result.errors[0].kind == "configuration"

    def test_duplicate_rule_id_reported(self):
        result = DetectionEngine().run(
            sample_records(),
            [VolumeThresholdConfig(threshold=1_000), VolumeThresholdConfig(threshold=10)],
        )
        assert [(e.rule_id, e.message) for e in result.errors] == [
            ("volume_threshold", "duplicate rule id")
        ]
        # first config wins
        assert all(a.threshold == 1_000 for a in result.anomalies)

    def test_wrong_config_type_reported(self):
        result = DetectionEngine().run(sample_records(), [BaseRuleConfig(id="volume_threshold")])
        assert result.errors[0].kind == "configuration"
        assert "VolumeThresholdConfig" in result.errors[0].message

    def test_slow_rule_warning_logged(self, caplog):
        calls = [0]

        def slow_mono():
            calls[0] += 1
            return float(calls[0])

        engine = engine_with(AlwaysFireRule())
        with caplog.at_level(logging.WARNING, logger="ipdrwatch.backend.engine.engine"):
            with patch("ipdrwatch.backend.engine.engine.time.monotonic", side_effect=slow_mono):
                result = engine.run(sample_records(), [BaseRuleConfig(id="always_fire")])
        assert len(result.anomalies) == 1
        assert any("took" in r.getMessage() for r in caplog.records)


# ---------------------------------------------------------------------------
# Empty input
# ---------------------------------------------------------------------------

class TestEmptyInput:

    def test_empty_records_give_empty_result(self):
        result = DetectionEngine().run([], sample_configs())
        assert result.anomalies == []
        assert result.completed
        assert result.errors == []
        assert result.summary.total == 0
        assert result.summary.by_severity == {"low": 0, "medium": 0, "high": 0}
        assert len(result.warnings) == 1

    def test_empty_records_still_report_bad_configs(self):
        result = DetectionEngine().run([], [{"id": "frequency_burst", "window_seconds": 0}])
        assert [e.rule_id for e in result.errors] == ["frequency_burst"]

    def test_empty_records_with_cancelled_token_not_completed(self):
        token = CancellationToken()
        token.cancel()
        result = DetectionEngine().run([], sample_configs(), cancel_token=token)
        assert not result.completed
        assert result.anomalies == []
        assert sorted(e.rule_id for e in result.errors) == ["frequency_burst", "volume_threshold"]
        assert all(e.kind == "cancelled" for e in result.errors)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class TestCancellation:

    def test_pre_cancelled_token_runs_nothing(self):
        token = CancellationToken()
        token.cancel()
        result = DetectionEngine().run(sample_records(), sample_configs(), cancel_token=token)
        assert not result.completed
        assert result.anomalies == []
        assert sorted(e.rule_id for e in result.errors) == ["frequency_burst", "volume_threshold"]
        assert all(e.kind == "cancelled" for e in result.errors)

    def test_pre_cancelled_token_parallel(self):
        token = CancellationToken()
        token.cancel()
        result = DetectionEngine(parallel=True).run(
            sample_records(), sample_configs(), cancel_token=token
        )
        assert not result.completed
        assert result.anomalies == []

    def test_cancel_mid_run_keeps_finished_rules(self):
        token = CancellationToken()

        class AlwaysFireRule2(AlwaysFireRule):
            rule_id = "always_fire_2"

        engine = engine_with(AlwaysFireRule(), CancellingRule(token), AlwaysFireRule2())
        result = engine.run(
            sample_records(),
            [
                BaseRuleConfig(id="always_fire"),
                BaseRuleConfig(id="cancelling_rule"),
                BaseRuleConfig(id="always_fire_2"),
            ],
            cancel_token=token,
        )
        assert not result.completed
        assert [a.rule for a in result.anomalies] == ["always_fire"]
        assert {e.rule_id for e in result.errors} == {"cancelling_rule", "always_fire_2"}

    def test_rules_poll_token_between_entities(self):
        token = CancellationToken()
        token.cancel()
        from ipdrwatch.backend.engine.rules.volume_threshold import VolumeThresholdRule
        from ipdrwatch.backend.engine.models import DetectionCancelled
        with pytest.raises(DetectionCancelled):
            VolumeThresholdRule().evaluate(sample_records(), VolumeThresholdConfig(), token)


# ---------------------------------------------------------------------------
# Progress & metrics
# ---------------------------------------------------------------------------

class TestProgressAndMetrics:

    def test_progress_called_once_per_rule(self):
        updates: list[DetectionProgress] = []
        DetectionEngine(parallel=False).run(sample_records(), sample_configs(), progress=updates.append)
        assert [u.rules_completed for u in updates] == [1, 2]
        assert all(u.total_rules == 2 for u in updates)
        assert updates[-1].anomalies_found == 3

    def test_failing_progress_callback_does_not_abort(self):
        def boom(_):
            raise RuntimeError("ui went away")

        result = DetectionEngine().run(sample_records(), sample_configs(), progress=boom)
        assert result.summary.total == 3

    def test_metrics_counted(self):
        METRICS.reset_all()
        DetectionEngine().run(sample_records(), sample_configs())
        stats = METRICS.as_dict()
        assert stats["runs_started"] == 1
        assert stats["runs_completed"] == 1
        assert stats["records_scanned"] == len(sample_records())
        assert stats["anomalies_emitted"] == 3
        assert stats["rule_failures"] == 0

    def test_cancelled_empty_run_counted_as_cancelled(self):
        METRICS.reset_all()
        token = CancellationToken()
        token.cancel()
        DetectionEngine().run([], sample_configs(), cancel_token=token)
        stats = METRICS.as_dict()
        assert stats["runs_cancelled"] == 1
        assert stats["runs_completed"] == 0
        assert stats["rule_failures"] == 0

    def test_counter_rejects_negative_increment(self):
        counter = Counter()
        counter.inc(3)
        with pytest.raises(ValueError):
            counter.inc(-1)
        assert counter.value == 3
