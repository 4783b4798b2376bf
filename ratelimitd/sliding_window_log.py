"""Sliding window log strategy backed by Redis."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from . import config as config_module
from .limits import (
    DEFAULT_TTL_BUFFER_SECONDS,
    NANOSECONDS_PER_SECOND,
    RateLimiter,
    RateLimitError,
    RateLimitResponse,
    StrategyConstructor,
    get_duration_config,
    get_int_config,
    get_int_from_result,
    get_string_config,
)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_SCRIPT = """
local key = KEYS[1]
local window_start_nanos = tonumber(ARGV[1])
local current_timestamp_nanos = tonumber(ARGV[2])
local bucket_size = tonumber(ARGV[3])
local window_size_seconds = tonumber(ARGV[4])
local ttl_buffer_seconds = tonumber(ARGV[5])

redis.call('ZREMRANGEBYSCORE', key, '-inf', window_start_nanos)

local current_count = redis.call('ZCARD', key)

if current_count >= bucket_size then
    local timestamps = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    local reset_time_seconds = 0
    if #timestamps > 0 then
        local oldest_timestamp_nanos = tonumber(timestamps[2])
        reset_time_seconds = (oldest_timestamp_nanos
            + (window_size_seconds * 1000000000)) / 1000000000
    end
    return {0, current_count, reset_time_seconds}
end

local member = current_timestamp_nanos .. ':' .. math.random()
redis.call('ZADD', key, current_timestamp_nanos, member)
redis.call('EXPIRE', key, window_size_seconds + ttl_buffer_seconds)

return {1, current_count + 1, 0, bucket_size - current_count - 1}
"""


def _aware(timestamp: datetime) -> datetime:
    return timestamp.astimezone() if timestamp.tzinfo is None else timestamp


def _unix_nanos(timestamp: datetime) -> int:
    delta = _aware(timestamp) - _EPOCH
    whole_seconds = delta.days * 86_400 + delta.seconds
    return whole_seconds * NANOSECONDS_PER_SECOND + delta.microseconds * 1_000


def _parse(value: Any, label: str) -> int:
    try:
        return get_int_from_result(value)
    except RateLimitError as exc:
        raise RateLimitError(f"failed to parse {label}: {exc}") from exc


@dataclass(frozen=True)
class SlidingWindowLogSettings:
    """Settings for a sliding window log rate limiter."""

    window_size: timedelta
    bucket_size: int
    key_prefix: str = ""
    ttl_buffer_seconds: int = 0


class SlidingWindowLogRateLimiter(RateLimiter):
    """Keeps the timestamp of every accepted request inside the window."""

    def __init__(self, settings: SlidingWindowLogSettings, redis_client: Any) -> None:
        if (
            settings.window_size <= timedelta(0)
            or settings.bucket_size <= 0
            or redis_client is None
        ):
            raise RateLimitError("invalid configuration")
        ttl_buffer = settings.ttl_buffer_seconds
        if ttl_buffer <= 0:
            ttl_buffer = DEFAULT_TTL_BUFFER_SECONDS
        self.window_size_seconds = int(settings.window_size.total_seconds())
        self.redis_client = redis_client
        self.key_prefix = settings.key_prefix
        self.bucket_size = settings.bucket_size
        self.ttl_buffer = ttl_buffer

    def _redis_key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    def is_allowed(self, key: str, timestamp: datetime) -> RateLimitResponse:
        timestamp = _aware(timestamp)
        now_nanos = _unix_nanos(timestamp)
        window_start_nanos = now_nanos - self.window_size_seconds * NANOSECONDS_PER_SECOND

        result = self.redis_client.eval(
            _SCRIPT,
            1,
            self._redis_key(key),
            window_start_nanos,
            now_nanos,
            self.bucket_size,
            self.window_size_seconds,
            self.ttl_buffer,
        )

        if not isinstance(result, (list, tuple)) or len(result) < 3:
            raise RateLimitError("invalid redis response from sliding window log script")

        allowed = _parse(result[0], "allowed flag")
        current_count = _parse(result[1], "current count")
        reset_seconds = _parse(result[2], "reset time")

        metadata: dict[str, Any] = {
            "current_count": current_count,
            "window_size": self.window_size_seconds,
        }

        if reset_seconds > 0:
            reset_time = datetime.fromtimestamp(reset_seconds, tz=timezone.utc)
        else:
            reset_time = timestamp + timedelta(seconds=self.window_size_seconds)

        if allowed == 1:
            remaining = 0
            if len(result) > 3:
                try:
                    remaining = get_int_from_result(result[3])
                except RateLimitError:
                    remaining = 0
            return RateLimitResponse(
                allowed=True,
                limit=self.bucket_size,
                remaining=remaining,
                reset_time=reset_time,
                metadata=metadata,
            )

        return RateLimitResponse(
            allowed=False,
            limit=self.bucket_size,
            remaining=0,
            reset_time=reset_time,
            retry_after=self.calculate_retry_after(reset_time, timestamp),
            metadata=metadata,
        )

    def reset(self, key: str) -> None:
        self.redis_client.delete(self._redis_key(key))

    def calculate_retry_after(
        self, reset_time: datetime | None, current_time: datetime
    ) -> timedelta:
        """Time from ``current_time`` to ``reset_time``, never negative."""
        if reset_time is None:
            return timedelta(0)
        return max(_aware(reset_time) - _aware(current_time), timedelta(0))


class SlidingWindowLogConstructor(StrategyConstructor):
    """Builds sliding window log rate limiters."""

    def name(self) -> str:
        return "sliding_window_log"

    def new_from_config(self, config: Mapping[str, Any], redis_client: Any) -> RateLimiter:
        try:
            window_size = get_duration_config(config, "window_size")
            bucket_size = get_int_config(config, "bucket_size")
            key_prefix = get_string_config(config, "key_prefix")
            ttl_buffer = get_int_config(config, "ttl_buffer_seconds")
        except RateLimitError as exc:
            raise RateLimitError(f"sliding window strategy: {exc}") from exc
        settings = SlidingWindowLogSettings(
            window_size=window_size,
            bucket_size=bucket_size,
            key_prefix=key_prefix,
            ttl_buffer_seconds=ttl_buffer,
        )
        return SlidingWindowLogRateLimiter(settings, redis_client)

    def convert_config(self, raw_config: Any) -> dict[str, Any]:
        if not isinstance(raw_config, config_module.SlidingWindowLogConfig):
            raise RateLimitError(
                f"expected SlidingWindowLogConfig, got {type(raw_config).__name__}"
            )
        return {
            "key_prefix": raw_config.key_prefix,
            "ttl_buffer_seconds": raw_config.ttl_buffer_seconds,
            "window_size": timedelta(seconds=raw_config.window_size_seconds),
            "bucket_size": raw_config.bucket_size,
        }