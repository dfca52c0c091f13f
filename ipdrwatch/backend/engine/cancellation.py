"""
engine/cancellation.py

Cooperative cancellation for long scans.

The caller keeps a CancellationToken and calls cancel() from any thread;
the engine and its rules poll it between dispatches and between entities.
"""

from __future__ import annotations

import threading

from .models import DetectionCancelled


class CancellationToken:
    __slots__ = ("_event",)

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise DetectionCancelled("detection cancelled by caller")

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"
