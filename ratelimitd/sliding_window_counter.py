"""Sliding window counter strategy backed by Redis."""

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
local current_window_start = tonumber(ARGV[1])
local previous_window_start = tonumber(ARGV[2])
local bucket_size = tonumber(ARGV[3])
local window_size_nanos = tonumber(ARGV[4])
local ttl_seconds = tonumber(ARGV[5])
local window_progress = tonumber(ARGV[6])

local current_key = key .. ':current'
local previous_key = key .. ':previous'

local current_count = 0
local previous_count = 0

local current_data = redis.call('HMGET', current_key, 'count', 'window_start')
if current_data[1] and current_data[2] then
    local stored_start = tonumber(current_data[2])
    if stored_start == current_window_start then
        current_count = tonumber(current_data[1])
    elseif stored_start == previous_window_start then
        previous_count = tonumber(current_data[1])
    end
end

if previous_count == 0 then
    local previous_data = redis.call('HMGET', previous_key, 'count', 'window_start')
    if previous_data[1] and previous_data[2]
        and tonumber(previous_data[2]) == previous_window_start then
        previous_count = tonumber(previous_data[1])
    end
end

local weighted_count = math.floor(current_count + previous_count * (1 - window_progress))

if weighted_count >= bucket_size then
    return {0, weighted_count, current_window_start + window_size_nanos,
            current_count, previous_count}
end

local new_current_count = current_count + 1
redis.call('HMSET', current_key, 'count', new_current_count,
           'window_start', current_window_start)
redis.call('EXPIRE', current_key, ttl_seconds)

redis.call('HMSET', previous_key, 'count', previous_count,
           'window_start', previous_window_start)
redis.call('EXPIRE', previous_key, ttl_seconds)

local remaining = math.max(0, bucket_size - weighted_count - 1)
return {1, weighted_count + 1, 0, new_current_count, previous_count, remaining}
"""


def _duration_nanos(duration: timedelta) -> int:
    whole_seconds = duration.days * 86_400 + duration.seconds
    return whole_seconds * NANOSECONDS_PER_SECOND + duration.microseconds * 1_000


def _unix_nanos(timestamp: datetime) -> int:
    if timestamp.tzinfo is None:
        timestamp = timestamp.astimezone()
    return _duration_nanos(timestamp - _EPOCH)


def _from_unix_nanos(nanos: int) -> datetime:
    return _EPOCH + timedelta(microseconds=nanos // 1_000)


def _nanos_to_timedelta(nanos: int) -> timedelta:
    return timedelta(microseconds=nanos / 1_000)


@dataclass(frozen=True)
class SlidingWindowCounterSettings:
    """Settings for a sliding window counter rate limiter."""

    window_size: timedelta
    bucket_size: int
    key_prefix: str = ""
    ttl_buffer_seconds: int = 0


class SlidingWindowCounterRateLimiter(RateLimiter):
    """Weights the previous window's count by how much of it still overlaps."""

    def __init__(self, settings: SlidingWindowCounterSettings, redis_client: Any) -> None:
        if (
            settings.window_size <= timedelta(0)
            or settings.bucket_size <= 0
            or redis_client is None
        ):
            raise RateLimitError("invalid configuration")
        ttl_buffer = settings.ttl_buffer_seconds
        if ttl_buffer <= 0:
            ttl_buffer = DEFAULT_TTL_BUFFER_SECONDS
        self.window_size_nanos = _duration_nanos(settings.window_size)
        self.redis_client = redis_client
        self.key_prefix = settings.key_prefix
        self.bucket_size = settings.bucket_size
        self.ttl_buffer = ttl_buffer

    def _redis_key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    def is_allowed(self, key: str, timestamp: datetime) -> RateLimitResponse:
        redis_key = self._redis_key(key)
        now_nanos = _unix_nanos(timestamp)
        window = self.window_size_nanos
        current_window_start = (now_nanos // window) * window
        previous_window_start = current_window_start - window

        window_progress = min((now_nanos - current_window_start) / window, 1.0)
        ttl_seconds = (window // NANOSECONDS_PER_SECOND) * 2 + self.ttl_buffer

        result = self.redis_client.eval(
            _SCRIPT,
            1,
            redis_key,
            current_window_start,
            previous_window_start,
            self.bucket_size,
            window,
            ttl_seconds,
            window_progress,
        )

        if not isinstance(result, (list, tuple)) or len(result) < 5:
            raise RateLimitError("invalid redis response from rate limit script")

        allowed, weighted_count, reset_nanos, current_count, previous_count = (
            _parse(value, label)
            for value, label in zip(
                result[:5],
                ("allowed flag", "weighted count", "reset time",
                 "current count", "previous count"),
            )
        )

        metadata: dict[str, Any] = {
            "weighted_count": weighted_count,
            "current_count": current_count,
            "previous_count": previous_count,
            "window_progress": window_progress,
            "window_size": window // NANOSECONDS_PER_SECOND,
        }

        reset_time = _from_unix_nanos(
            reset_nanos if reset_nanos > 0 else current_window_start + window
        )

        if allowed == 1:
            remaining = 0
            if len(result) > 5:
                try:
                    remaining = get_int_from_result(result[5])
                except RateLimitError:
                    remaining = 0
            return RateLimitResponse(
                allowed=True,
                limit=self.bucket_size,
                remaining=remaining,
                reset_time=reset_time,
                metadata=metadata,
            )

        retry_after = self.calculate_retry_after(
            current_count, previous_count, current_window_start, now_nanos
        )
        return RateLimitResponse(
            allowed=False,
            limit=self.bucket_size,
            remaining=0,
            reset_time=reset_time,
            retry_after=retry_after,
            metadata=metadata,
        )

    def reset(self, key: str) -> None:
        redis_key = self._redis_key(key)
        self.redis_client.delete(f"{redis_key}:current", f"{redis_key}:previous")

    def calculate_retry_after(
        self,
        current_count: int,
        previous_count: int,
        current_window_start: int,
        current_timestamp: int,
    ) -> timedelta:
        """Time until the weighted count drops below the limit.

        Window starts and timestamps are Unix nanoseconds. The result may be
        negative when the limit has already been crossed back.
        """
        next_window = current_window_start + self.window_size_nanos
        if previous_count == 0:
            return _nanos_to_timedelta(next_window - current_timestamp)

        # current + (1 - progress) * previous = bucket_size, solved for progress
        required_progress = 1.0 - (self.bucket_size - current_count) / previous_count
        if required_progress >= 1.0:
            return _nanos_to_timedelta(next_window - current_timestamp)

        future = current_window_start + int(required_progress * self.window_size_nanos)
        return _nanos_to_timedelta(future - current_timestamp)


def _parse(value: Any, label: str) -> int:
    try:
        return get_int_from_result(value)
    except RateLimitError as exc:
        raise RateLimitError(f"failed to parse {label}: {exc}") from exc


class SlidingWindowCounterConstructor(StrategyConstructor):
    """Builds sliding window counter rate limiters."""

    def name(self) -> str:
        return "sliding_window_counter"

    def new_from_config(self, config: Mapping[str, Any], redis_client: Any) -> RateLimiter:
        try:
            window_size = get_duration_config(config, "window_size")
            bucket_size = get_int_config(config, "bucket_size")
            key_prefix = get_string_config(config, "key_prefix")
            ttl_buffer = get_int_config(config, "ttl_buffer_seconds")
        except RateLimitError as exc:
            raise RateLimitError(f"sliding window counter strategy: {exc}") from exc
        settings = SlidingWindowCounterSettings(
            window_size=window_size,
            bucket_size=bucket_size,
            key_prefix=key_prefix,
            ttl_buffer_seconds=ttl_buffer,
        )
        return SlidingWindowCounterRateLimiter(settings, redis_client)

    def convert_config(self, raw_config: Any) -> dict[str, Any]:
        if not isinstance(raw_config, config_module.SlidingWindowCounterConfig):
            raise RateLimitError(
                f"expected SlidingWindowCounterConfig, got {type(raw_config).__name__}"
            )
        return {
            "key_prefix": raw_config.key_prefix,
            "ttl_buffer_seconds": raw_config.ttl_buffer_seconds,
            "window_size": timedelta(seconds=raw_config.window_size_seconds),
            "bucket_size": raw_config.bucket_size,
        }