"""
engine/rules/late_night.py

Late-Night Activity Rule.

Flags entities active inside a suspicious time-of-day window (default
00:00–05:00 in the configured civil timezone).

Detection strategy:
    Each record's [start, end] span is converted into the rule's timezone
    and tested against the window instance of every civil night it can
    touch. A window such as 22:00–03:00 wraps past midnight; its night is
    keyed by the date on which the window opens. Overlapping records are
    grouped per (entity, night) and each group yields one anomaly.

    Measured value is the bytes moved inside the window. A record that is
    only partly inside contributes in proportion to the overlapping time.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from ...models import Record
from ..cancellation import CancellationToken
from ..models import Anomaly, Severity
from ..rule_config import LATE_NIGHT_ACTIVITY, LateNightConfig
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

_ONE_DAY = timedelta(days=1)


class LateNightActivityRule(BaseRule):
    """Detects sessions overlapping a configured night-time window."""

    rule_id = LATE_NIGHT_ACTIVITY
    config_type = LateNightConfig
    enabled = True

    # ------------------------------------------------------------------
    # BaseRule interface
    # ------------------------------------------------------------------

    def evaluate(
        self,
        records: Sequence[Record],
        config: LateNightConfig,
        cancel_token: CancellationToken | None = None,
    ) -> list[Anomaly]:
        tz = ZoneInfo(config.timezone)
        anomalies: list[Anomaly] = []

        for entity, entity_records in iter_entities(group_by_entity(records), cancel_token):
            nights: dict[date, list[tuple[Record, float]]] = {}
            for record in entity_records:
                for night, share in self._overlaps(record, config, tz):
                    nights.setdefault(night, []).append((record, share))

            for night in sorted(nights):
                anomalies.append(self._make_anomaly(entity, night, nights[night], config, tz))

        logger.debug("late_night_activity: %d finding(s)", len(anomalies))
        return anomalies

    # ------------------------------------------------------------------
    # Window arithmetic
    # ------------------------------------------------------------------

    def window_bounds(
        self, night: date, config: LateNightConfig, tz: ZoneInfo
    ) -> tuple[datetime, datetime]:
        """Local [start, end) of the window that opens on `night`."""
        start = datetime.combine(night, config.window_start, tzinfo=tz)
        end_day = night + _ONE_DAY if config.wraps_midnight else night
        end = datetime.combine(end_day, config.window_end, tzinfo=tz)
        return start, end

    def _overlaps(
        self, record: Record, config: LateNightConfig, tz: ZoneInfo
    ) -> list[tuple[date, float]]:
        """Every night the record overlaps, with its byte share for that night."""
        # Civil dates come from local time; comparisons and durations use UTC
        start = record.start_time.astimezone(timezone.utc)
        end = record.end_time.astimezone(timezone.utc)
        duration = (end - start).total_seconds()
        first_day = start.astimezone(tz).date()
        last_day = end.astimezone(tz).date()

        # A wrapping window that opened the previous evening can still be open
        day = first_day - _ONE_DAY if config.wraps_midnight else first_day
        hits: list[tuple[date, float]] = []
        while day <= last_day:
            win_start, win_end = (
                bound.astimezone(timezone.utc) for bound in self.window_bounds(day, config, tz)
            )
            if duration <= 0:
                if win_start <= start < win_end:
                    hits.append((day, float(record.bytes_transferred)))
            elif start < win_end and end > win_start:
                overlap = (min(end, win_end) - max(start, win_start)).total_seconds()
                hits.append((day, record.bytes_transferred * overlap / duration))
            day += _ONE_DAY
        return hits

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _make_anomaly(
        self,
        entity: str,
        night: date,
        hits: list[tuple[Record, float]],
        config: LateNightConfig,
        tz: ZoneInfo,
    ) -> Anomaly:
        night_records = [r for r, _ in hits]
        night_bytes = sum(share for _, share in hits)
        win_start, _ = self.window_bounds(night, config, tz)
        window_label = (
            f"{config.window_start:%H:%M}-{config.window_end:%H:%M} {config.timezone}"
        )

        reason = (
            f"{len(night_records)} connection(s) during {window_label} "
            f"on night of {night.isoformat()} with {format_bytes(night_bytes)} transferred"
        )
        if config.volume_threshold is None:
            severity = Severity.LOW
        else:
            severity = self.classifier.classify(
                self.rule_id, night_bytes, config.volume_threshold
            )
            reason += f" (threshold {format_bytes(config.volume_threshold)})"

        return Anomaly(
            id=anomaly_id(self.rule_id, entity, night.isoformat()),
            entity=entity,
            rule=self.rule_id,
            severity=severity,
            reason=reason,
            timestamp=win_start,
            evidence=evidence_ids(night_records),
            measured_value=float(round(night_bytes)),
            threshold=(
                float(config.volume_threshold)
                if config.volume_threshold is not None else None
            ),
            case_id=case_id_of(night_records),
        )
