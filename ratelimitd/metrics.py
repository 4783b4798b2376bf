"""Collectors for rate limiting metrics."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta

CONTENT_TYPE_LATEST = "text/plain; version=0.0.4; charset=utf-8"

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

_DECISIONS_NAME = "rate_limit_requests_total"
_DECISIONS_HELP = "Total number of rate limit decisions by strategy and outcome"
_DURATION_NAME = "rate_limit_duration_seconds"
_DURATION_HELP = "Time taken to process rate limit checks"


class Collector(ABC):
    """Receives rate limiting decisions and timings."""

    @abstractmethod
    def record_rate_limit_decision(self, strategy: str, allowed: bool) -> None:
        """Count one decision for a strategy."""

    @abstractmethod
    def record_rate_limit_duration(self, strategy: str, duration: float | timedelta) -> None:
        """Record how long one check took, in seconds."""


class NoopCollector(Collector):
    """Collector that discards everything."""

    def record_rate_limit_decision(self, strategy: str, allowed: bool) -> None:
        return None

    def record_rate_limit_duration(self, strategy: str, duration: float | timedelta) -> None:
        return None


@dataclass
class _Histogram:
    cumulative: list[int] = field(default_factory=lambda: [0] * len(DEFAULT_BUCKETS))
    total: float = 0.0
    count: int = 0


class PrometheusCollector(Collector):
    """Collector that keeps counters and histograms in Prometheus text format."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._decisions: dict[tuple[str, str], int] = {}
        self._durations: dict[str, _Histogram] = {}

    def record_rate_limit_decision(self, strategy: str, allowed: bool) -> None:
        decision = "allowed" if allowed else "denied"
        with self._lock:
            key = (strategy, decision)
            self._decisions[key] = self._decisions.get(key, 0) + 1

    def record_rate_limit_duration(self, strategy: str, duration: float | timedelta) -> None:
        seconds = duration.total_seconds() if isinstance(duration, timedelta) else float(duration)
        with self._lock:
            hist = self._durations.setdefault(strategy, _Histogram())
            hist.cumulative = [
                count + (seconds <= bound)
                for count, bound in zip(hist.cumulative, DEFAULT_BUCKETS)
            ]
            hist.total += seconds
            hist.count += 1

    def render(self) -> str:
        """Return all metrics in the Prometheus text exposition format."""
        with self._lock:
            decisions = dict(self._decisions)
            durations = {
                name: _Histogram(list(h.cumulative), h.total, h.count)
                for name, h in self._durations.items()
            }

        lines: list[str] = []
        if durations:
            lines.append(f"# HELP {_DURATION_NAME} {_DURATION_HELP}")
            lines.append(f"# TYPE {_DURATION_NAME} histogram")
            for strategy in sorted(durations):
                hist = durations[strategy]
                label = f'strategy="{_escape(strategy)}"'
                for bound, count in zip(DEFAULT_BUCKETS, hist.cumulative):
                    lines.append(
                        f'{_DURATION_NAME}_bucket{{{label},le="{_format(bound)}"}} {count}'
                    )
                lines.append(f'{_DURATION_NAME}_bucket{{{label},le="+Inf"}} {hist.count}')
                lines.append(f"{_DURATION_NAME}_sum{{{label}}} {_format(hist.total)}")
                lines.append(f"{_DURATION_NAME}_count{{{label}}} {hist.count}")
        if decisions:
            lines.append(f"# HELP {_DECISIONS_NAME} {_DECISIONS_HELP}")
            lines.append(f"# TYPE {_DECISIONS_NAME} counter")
            for (strategy, decision), count in sorted(decisions.items()):
                lines.append(
                    f'{_DECISIONS_NAME}{{decision="{decision}",'
                    f'strategy="{_escape(strategy)}"}} {count}'
                )
        return "\n".join(lines) + "\n" if lines else ""


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _format(value: float) -> str:
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(value)