"""
backend/models.py

Normalised in-memory representation of IPDR session records.

Records arrive already parsed from the ingestion collaborator; this module
only fixes the shape every detection rule reads from. A Record is frozen
so the same tuple of records can be shared across concurrently running
rules without copying.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum


class TransportProtocol(str, Enum):
    """Protocols the upload formats are known to produce.

    Record.protocol stays an open string so new values from an operator's
    export do not break ingestion.
    """

    TCP   = "TCP"
    UDP   = "UDP"
    HTTP  = "HTTP"
    HTTPS = "HTTPS"


def _as_aware(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None or value.utcoffset() is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True, slots=True)
class Record:
    """One communication session attributed to a single case."""

    record_id: str
    """Stable identifier, quoted in anomaly evidence."""

    entity: str
    """Originating party (A-party): subscriber number or source IP."""

    counterpart: str
    """Destination party (B-party)."""

    protocol: str
    """Usually a TransportProtocol value; any string is accepted."""

    start_time: datetime
    end_time: datetime

    bytes_transferred: int = 0

    case_id: str | None = None
    operator: str | None = None
    """Telecom operator whose export produced this record, e.g. 'jio'."""

    entity_port: int | None = None
    counterpart_port: int | None = None

    def __post_init__(self) -> None:
        start = _as_aware(self.start_time)
        end = _as_aware(self.end_time)
        if end < start:
            raise ValueError(
                f"record {self.record_id!r}: end_time {end.isoformat()} "
                f"precedes start_time {start.isoformat()}"
            )
        if self.bytes_transferred < 0:
            raise ValueError(
                f"record {self.record_id!r}: bytes_transferred must be >= 0"
            )
        # frozen dataclass: bypass __setattr__ to store the normalised values
        object.__setattr__(self, "start_time", start)
        object.__setattr__(self, "end_time", end)
        if isinstance(self.protocol, TransportProtocol):
            object.__setattr__(self, "protocol", self.protocol.value)

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    def __repr__(self) -> str:
        return (
            f"Record({self.record_id!r} {self.entity}→{self.counterpart}"
            f"/{self.protocol} {self.start_time.isoformat()} "
            f"bytes={self.bytes_transferred})"
        )
