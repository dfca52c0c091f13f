"""
engine/engine.py

DetectionEngine — runs every enabled rule over one case's record set.

Per run():
  1. Snapshot the records into a tuple (rules read it, nobody writes it)
  2. Resolve rule configs: skip disabled, validate raw mappings, report
     unknown / duplicate / malformed configs as per-rule errors
  3. Dispatch rules to a thread pool and join on all of them
  4. Merge, sort by (severity desc, entity, rule), summarise

A failing rule never aborts the others; it shows up in result.errors.
The engine keeps no reference to records or configs once run() returns.
"""

from __future__ import annotations

import importlib
import inspect
import logging
import pkgutil
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any

from pydantic import ValidationError

from ..config import settings
from ..metrics import METRICS
from ..models import Record
from .cancellation import CancellationToken
from .models import (
    Anomaly,
    ConfigurationError,
    DetectionCancelled,
    DetectionProgress,
    DetectionResult,
    RuleError,
)
from .rule_config import BaseRuleConfig
from .rules.base import BaseRule
from .severity import SeverityClassifier
from .summary import build_summary

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[DetectionProgress], None]

_EMPTY_INPUT_WARNING = "empty input: no records supplied"


class DetectionEngine:
    def __init__(
        self,
        classifier: SeverityClassifier | None = None,
        max_workers: int | None = None,
        parallel: bool | None = None,
        top_n: int | None = None,
    ) -> None:
        self.classifier = classifier or SeverityClassifier.from_settings()
        self.max_workers = max_workers or settings.MAX_WORKERS
        self.parallel = settings.PARALLEL_EVALUATION if parallel is None else parallel
        self.top_n = top_n or settings.TOP_ENTITIES_LIMIT
        self.rules: dict[str, BaseRule] = self._load_rules()

        logger.info(
            "DetectionEngine loaded %d rule(s): %s | parallel=%s workers=%d %r",
            len(self.rules),
            sorted(self.rules),
            self.parallel,
            self.max_workers,
            self.classifier,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        records: Iterable[Record],
        rule_configs: Iterable[BaseRuleConfig | Mapping[str, Any]],
        cancel_token: CancellationToken | None = None,
        progress: ProgressCallback | None = None,
    ) -> DetectionResult:
        t0 = time.monotonic()
        METRICS.runs_started.inc()

        snapshot: tuple[Record, ...] = tuple(records)
        METRICS.records_scanned.inc(len(snapshot))

        result = DetectionResult()
        jobs = self._resolve_configs(rule_configs, result.errors)

        if not snapshot:
            logger.info("No records supplied — skipping %d rule(s)", len(jobs))
            result.warnings.append(_EMPTY_INPUT_WARNING)
            result.summary = build_summary([], self.top_n)
            if cancel_token is not None and cancel_token.cancelled:
                result.errors.extend(error for _, _, error in self._skipped(jobs))
                result.completed = False
            return self._finish(result, t0)

        anomalies: list[Anomaly] = []
        finished = 0
        for rule_id, found, error in self._dispatch(jobs, snapshot, cancel_token):
            finished += 1
            if error is None:
                anomalies.extend(found)
                result.rules_evaluated.append(rule_id)
            else:
                result.errors.append(error)
            if progress is not None:
                self._report_progress(progress, DetectionProgress(
                    rules_completed=finished,
                    total_rules=len(jobs),
                    rule_id=rule_id,
                    anomalies_found=len(anomalies),
                    elapsed_seconds=time.monotonic() - t0,
                ))

        anomalies.sort(key=Anomaly.sort_key)
        result.anomalies = anomalies
        result.summary = build_summary(anomalies, self.top_n)
        result.rules_evaluated.sort()
        result.completed = not any(e.kind == "cancelled" for e in result.errors)
        return self._finish(result, t0)

    # ------------------------------------------------------------------
    # Config resolution
    # ------------------------------------------------------------------

    def _resolve_configs(
        self,
        rule_configs: Iterable[BaseRuleConfig | Mapping[str, Any]],
        errors: list[RuleError],
    ) -> list[tuple[BaseRule, BaseRuleConfig]]:
        jobs: list[tuple[BaseRule, BaseRuleConfig]] = []
        seen: set[str] = set()

        for item in rule_configs:
            if isinstance(item, Mapping):
                rule_id = str(item.get("id", "<missing id>"))
                enabled = item.get("enabled", True) is not False
            else:
                rule_id = item.id
                enabled = item.enabled
            if not enabled:
                logger.debug("Rule %r disabled — skipped", rule_id)
                continue

            if rule_id in seen:
                errors.append(RuleError(rule_id, "configuration", "duplicate rule id"))
                continue
            seen.add(rule_id)

            rule = self.rules.get(rule_id)
            if rule is None:
                errors.append(RuleError(rule_id, "configuration", "no rule registered with this id"))
                continue

            if isinstance(item, Mapping):
                try:
                    config = rule.config_type.model_validate(dict(item))
                except ValidationError as exc:
                    logger.warning("Rule %r has an invalid config: %s", rule_id, exc)
                    errors.append(RuleError(rule_id, "configuration", _validation_message(exc)))
                    continue
            else:
                config = item

            if not config.enabled:
                logger.debug("Rule %r disabled — skipped", rule_id)
                seen.discard(rule_id)
                continue

            if not isinstance(config, rule.config_type):
                errors.append(RuleError(
                    rule_id, "configuration",
                    f"expected {rule.config_type.__name__}, got {type(config).__name__}",
                ))
                continue
            jobs.append((rule, config))

        return jobs

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(
        self,
        jobs: list[tuple[BaseRule, BaseRuleConfig]],
        records: Sequence[Record],
        cancel_token: CancellationToken | None,
    ):
        """Yield (rule_id, anomalies, error) as each rule finishes."""
        if not self.parallel or len(jobs) <= 1:
            for i, (rule, config) in enumerate(jobs):
                if cancel_token is not None and cancel_token.cancelled:
                    yield from self._skipped(jobs[i:])
                    return
                yield (rule.rule_id, *self._safe_evaluate(rule, config, records, cancel_token))
            return

        with ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(jobs)),
            thread_name_prefix="ipdrwatch-rule",
        ) as pool:
            futures = {}
            for i, (rule, config) in enumerate(jobs):
                if cancel_token is not None and cancel_token.cancelled:
                    yield from self._skipped(jobs[i:])
                    break
                future = pool.submit(self._safe_evaluate, rule, config, records, cancel_token)
                futures[future] = rule.rule_id
            for future in as_completed(futures):
                yield (futures[future], *future.result())

    @staticmethod
    def _skipped(jobs: list[tuple[BaseRule, BaseRuleConfig]]):
        for rule, _ in jobs:
            yield rule.rule_id, [], RuleError(rule.rule_id, "cancelled", "not started: run cancelled")

    def _safe_evaluate(
        self,
        rule: BaseRule,
        config: BaseRuleConfig,
        records: Sequence[Record],
        cancel_token: CancellationToken | None,
    ) -> tuple[list[Anomaly], RuleError | None]:
        t0 = time.monotonic()
        found: list[Anomaly] = []
        error: RuleError | None = None
        try:
            found = rule.evaluate(records, config, cancel_token)
        except DetectionCancelled:
            logger.info("Rule %r cancelled mid-evaluation", rule.rule_id)
            error = RuleError(rule.rule_id, "cancelled", "cancelled before completion")
        except ConfigurationError as exc:
            logger.error("Rule %r configuration error: %s", rule.rule_id, exc.message)
            error = RuleError(rule.rule_id, "configuration", exc.message)
        except Exception as exc:
            logger.exception("Rule %r raised an unhandled exception: %s", rule.rule_id, exc)
            error = RuleError(rule.rule_id, "evaluation", f"{type(exc).__name__}: {exc}")

        elapsed_ms = (time.monotonic() - t0) * 1000
        if elapsed_ms > settings.RULE_SLOW_WARNING_MS:
            logger.warning(
                "Rule %r took %.1fms over %d record(s)", rule.rule_id, elapsed_ms, len(records)
            )
        return found, error

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _report_progress(progress: ProgressCallback, update: DetectionProgress) -> None:
        try:
            progress(update)
        except Exception as exc:
            logger.exception("Progress callback raised: %s", exc)

    def _finish(self, result: DetectionResult, t0: float) -> DetectionResult:
        METRICS.anomalies_emitted.inc(len(result.anomalies))
        METRICS.rule_failures.inc(sum(1 for e in result.errors if e.kind != "cancelled"))
        if result.completed:
            METRICS.runs_completed.inc()
        else:
            METRICS.runs_cancelled.inc()

        logger.info(
            "Detection %s in %.1fms — anomalies=%d by_severity=%s errors=%s",
            "completed" if result.completed else "cancelled",
            (time.monotonic() - t0) * 1000,
            result.summary.total,
            result.summary.by_severity,
            [f"{e.rule_id}:{e.kind}" for e in result.errors] or "none",
        )
        return result

    def _load_rules(self) -> dict[str, BaseRule]:
        from . import rules as rules_pkg
        rules: dict[str, BaseRule] = {}
        for _, module_name, _ in pkgutil.iter_modules(rules_pkg.__path__):
            if module_name == "base":
                continue
            try:
                module = importlib.import_module(f"{rules_pkg.__name__}.{module_name}")
            except Exception as exc:
                logger.error("Failed to import rule module %r: %s", module_name, exc)
                continue
            for _, obj in inspect.getmembers(module, inspect.isclass):
                if (
                    issubclass(obj, BaseRule)
                    and obj is not BaseRule
                    and obj.__module__ == module.__name__
                    and obj.enabled
                ):
                    if obj.rule_id in rules:
                        logger.error("Duplicate rule id %r in %r — ignored", obj.rule_id, module_name)
                        continue
                    rules[obj.rule_id] = obj(classifier=self.classifier)
        return rules


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "config"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)
