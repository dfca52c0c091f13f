"""
backend/metrics.py

Process-wide run counters for DetectionEngine. Rules may run on worker
threads, so every increment goes through a lock.

Usage:
    from ipdrwatch.backend.metrics import METRICS
    METRICS.runs_started.inc()
    print(METRICS.as_dict())
"""

import threading


class Counter:
    """Monotonic run counter; reset only by tests."""

    __slots__ = ("_value", "_lock")

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def inc(self, amount: int = 1) -> None:
        if amount < 0:
            raise ValueError(f"counter increment must be non-negative, got {amount}")
        with self._lock:
            self._value += amount

    def reset(self) -> None:
        with self._lock:
            self._value = 0

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def __repr__(self) -> str:  # pragma: no cover
        return f"Counter(value={self._value})"


class Metrics:
    """Singleton holding all engine counters."""

    def __init__(self) -> None:
        self.runs_started: Counter = Counter()
        """DetectionEngine.run() invocations."""

        self.runs_completed: Counter = Counter()
        """Runs that evaluated every enabled rule (with or without rule errors)."""

        self.runs_cancelled: Counter = Counter()
        """Runs that stopped early because the caller cancelled."""

        self.records_scanned: Counter = Counter()
        """Records handed to the engine across all runs."""

        self.anomalies_emitted: Counter = Counter()

        self.rule_failures: Counter = Counter()
        """Rules that ended in a configuration or evaluation error."""

    def as_dict(self) -> dict:
        """Return all counters as a plain dict (safe for JSON serialisation)."""
        return {
            name: attr.value
            for name, attr in vars(self).items()
            if isinstance(attr, Counter)
        }

    def reset_all(self) -> None:
        """Reset every counter to zero (useful in tests)."""
        for attr in vars(self).values():
            if isinstance(attr, Counter):
                attr.reset()


# Module-level singleton — import from here everywhere
METRICS = Metrics()
