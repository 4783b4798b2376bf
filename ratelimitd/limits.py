"""Core rate limiting types, config helpers and the metrics decorator."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from .metrics import Collector

# Extra TTL added to keys to guard against clock drift and network latency.
DEFAULT_TTL_BUFFER_SECONDS = 60
# Lower bound for key TTLs.
MINIMUM_TTL_SECONDS = 60
NANOSECONDS_PER_SECOND = 1_000_000_000


class RateLimitError(Exception):
    """Raised when a rate limiter is misconfigured or its backend misbehaves."""


class RateLimitStrategy(str, Enum):
    TOKEN_BUCKET = "token_bucket"
    SLIDING_WINDOW_LOG = "sliding_window_log"
    SLIDING_WINDOW_COUNTER = "sliding_window_counter"


@dataclass(frozen=True)
class RateLimitResponse:
    """Outcome of one rate limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_time: datetime
    retry_after: timedelta | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class RateLimiter(ABC):
    """Decides whether a request identified by a key may proceed."""

    @abstractmethod
    def is_allowed(self, key: str, timestamp: datetime) -> RateLimitResponse:
        """Check and record one request for ``key`` at ``timestamp``."""

    @abstractmethod
    def reset(self, key: str) -> None:
        """Forget all state kept for ``key``."""


class StrategyConstructor(ABC):
    """Builds a rate limiter of one strategy from configuration."""

    @abstractmethod
    def name(self) -> str:
        """Name under which the strategy is registered."""

    @abstractmethod
    def new_from_config(self, config: Mapping[str, Any], redis_client: Any) -> RateLimiter:
        """Create a rate limiter from a normalised config mapping."""

    @abstractmethod
    def convert_config(self, raw_config: Any) -> dict[str, Any]:
        """Turn the strategy's typed config into a normalised mapping."""


def get_int_from_result(value: Any) -> int:
    """Read an integer from a backend reply, truncating floats."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RateLimitError(f"expected int64, got {type(value).__name__}")
    return int(value)


def _require(config: Mapping[str, Any], key: str) -> Any:
    if key not in config:
        raise RateLimitError(f"required config key '{key}' not found")
    return config[key]


def get_int_config(config: Mapping[str, Any], key: str) -> int:
    """Read a required number from ``config`` as an int."""
    value = _require(config, key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RateLimitError(
            f"config key '{key}' must be a number, got {type(value).__name__}"
        )
    return int(value)


def get_duration_config(config: Mapping[str, Any], key: str) -> timedelta:
    """Read a required ``timedelta`` from ``config``."""
    value = _require(config, key)
    if not isinstance(value, timedelta):
        raise RateLimitError(
            f"config key '{key}' must be a timedelta, got {type(value).__name__}"
        )
    return value


def get_string_config(config: Mapping[str, Any], key: str) -> str:
    """Read a required string from ``config``."""
    value = _require(config, key)
    if not isinstance(value, str):
        raise RateLimitError(
            f"config key '{key}' must be a string, got {type(value).__name__}"
        )
    return value


class MetricsDecorator(RateLimiter):
    """Wraps a rate limiter and reports timings and decisions to a collector."""

    def __init__(self, rate_limiter: RateLimiter, collector: Collector, strategy: str) -> None:
        self.rate_limiter = rate_limiter
        self.collector = collector
        self.strategy = strategy

    def is_allowed(self, key: str, timestamp: datetime) -> RateLimitResponse:
        start = time.perf_counter()
        try:
            response = self.rate_limiter.is_allowed(key, timestamp)
        finally:
            self.collector.record_rate_limit_duration(
                self.strategy, time.perf_counter() - start
            )
        self.collector.record_rate_limit_decision(self.strategy, response.allowed)
        return response

    def reset(self, key: str) -> None:
        self.rate_limiter.reset(key)