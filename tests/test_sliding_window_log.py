from datetime import datetime, timedelta, timezone

import pytest

from ratelimitd.config import SlidingWindowCounterConfig, SlidingWindowLogConfig
from ratelimitd.limits import DEFAULT_TTL_BUFFER_SECONDS, RateLimitError
from ratelimitd.sliding_window_log import (
    SlidingWindowLogConstructor,
    SlidingWindowLogRateLimiter,
    SlidingWindowLogSettings,
)

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeRedis:
    def __init__(self, reply=None):
        self.reply = reply
        self.eval_calls = []
        self.deleted = []

    def eval(self, script, numkeys, *args):
        self.eval_calls.append((numkeys, *args))
        return self.reply

    def delete(self, *keys):
        self.deleted.append(keys)
        return len(keys)


def make_limiter(reply=None):
    settings = SlidingWindowLogSettings(
        window_size=timedelta(seconds=10),
        bucket_size=5,
        key_prefix="test:",
        ttl_buffer_seconds=5,
    )
    redis = FakeRedis(reply)
    return SlidingWindowLogRateLimiter(settings, redis), redis


@pytest.mark.parametrize(
    "settings",
    [
        SlidingWindowLogSettings(timedelta(seconds=10), 5, "test:", 5),
        SlidingWindowLogSettings(timedelta(seconds=10), 5, "test:"),
    ],
)
def test_valid_settings(settings):
    limiter = SlidingWindowLogRateLimiter(settings, FakeRedis())
    assert limiter.bucket_size == settings.bucket_size
    assert limiter.window_size_seconds == 10
    assert limiter.key_prefix == settings.key_prefix
    expected_buffer = settings.ttl_buffer_seconds or DEFAULT_TTL_BUFFER_SECONDS
    assert limiter.ttl_buffer == expected_buffer


@pytest.mark.parametrize(
    "settings",
    [
        SlidingWindowLogSettings(timedelta(0), 5, "test:", 5),
        SlidingWindowLogSettings(timedelta(seconds=10), 0, "test:", 5),
    ],
)
def test_invalid_settings(settings):
    with pytest.raises(RateLimitError, match="invalid configuration"):
        SlidingWindowLogRateLimiter(settings, FakeRedis())


def test_missing_redis_client_rejected():
    with pytest.raises(RateLimitError):
        SlidingWindowLogRateLimiter(
            SlidingWindowLogSettings(timedelta(seconds=10), 5), None
        )


def test_calculate_retry_after_nil_reset_time():
    limiter, _ = make_limiter()
    assert limiter.calculate_retry_after(None, NOW) == timedelta(0)


def test_calculate_retry_after_future_reset_time():
    limiter, _ = make_limiter()
    assert limiter.calculate_retry_after(NOW + timedelta(seconds=5), NOW) == timedelta(seconds=5)


def test_calculate_retry_after_past_reset_time():
    limiter, _ = make_limiter()
    assert limiter.calculate_retry_after(NOW - timedelta(seconds=5), NOW) == timedelta(0)


def test_allowed_response():
    limiter, redis = make_limiter([1, 2, 0, 3])
    response = limiter.is_allowed("client", NOW)
    assert response.allowed is True
    assert response.limit == 5
    assert response.remaining == 3
    assert response.retry_after is None
    assert response.reset_time == NOW + timedelta(seconds=10)
    assert response.metadata == {"current_count": 2, "window_size": 10}


def test_script_arguments():
    limiter, redis = make_limiter([1, 1, 0, 4])
    limiter.is_allowed("client", NOW)
    assert redis.eval_calls == [
        (1, "test::client", 1704067190000000000, 1704067200000000000, 5, 10, 5)
    ]


def test_allowed_without_remaining_defaults_to_zero():
    limiter, _ = make_limiter([1, 2, 0])
    assert limiter.is_allowed("client", NOW).remaining == 0


def test_denied_response():
    limiter, _ = make_limiter([0, 5, 1704067205])
    response = limiter.is_allowed("client", NOW)
    assert response.allowed is False
    assert response.limit == 5
    assert response.remaining == 0
    assert response.reset_time == NOW + timedelta(seconds=5)
    assert response.retry_after == timedelta(seconds=5)
    assert response.metadata["current_count"] == 5


def test_denied_without_reset_time_waits_whole_window():
    limiter, _ = make_limiter([0, 5, 0])
    response = limiter.is_allowed("client", NOW)
    assert response.retry_after == timedelta(seconds=10)


@pytest.mark.parametrize("reply", [None, [1, 2], "oops"])
def test_invalid_reply_raises(reply):
    limiter, _ = make_limiter(reply)
    with pytest.raises(RateLimitError, match="invalid redis response"):
        limiter.is_allowed("client", NOW)


def test_unparsable_reply_raises():
    limiter, _ = make_limiter([1, "two", 0])
    with pytest.raises(RateLimitError, match="failed to parse current count"):
        limiter.is_allowed("client", NOW)


def test_reset_deletes_key():
    limiter, redis = make_limiter()
    limiter.reset("client")
    assert redis.deleted == [("test::client",)]


def test_constructor_name():
    assert SlidingWindowLogConstructor().name() == "sliding_window_log"


def test_constructor_builds_limiter():
    limiter = SlidingWindowLogConstructor().new_from_config(
        {
            "window_size": timedelta(seconds=10),
            "bucket_size": 5,
            "key_prefix": "test:",
            "ttl_buffer_seconds": 5,
        },
        FakeRedis(),
    )
    assert limiter.window_size_seconds == 10
    assert limiter.bucket_size == 5
    assert limiter.ttl_buffer == 5


def test_constructor_missing_key():
    with pytest.raises(RateLimitError, match="sliding window strategy: required config key 'window_size'"):
        SlidingWindowLogConstructor().new_from_config({"bucket_size": 5}, FakeRedis())


def test_constructor_wrong_type():
    config = {
        "window_size": 10,
        "bucket_size": 5,
        "key_prefix": "test:",
        "ttl_buffer_seconds": 5,
    }
    with pytest.raises(RateLimitError, match="must be a timedelta"):
        SlidingWindowLogConstructor().new_from_config(config, FakeRedis())


def test_convert_config():
    converted = SlidingWindowLogConstructor().convert_config(
        SlidingWindowLogConfig(
            key_prefix="test:", ttl_buffer_seconds=5, window_size_seconds=10, bucket_size=5
        )
    )
    assert converted == {
        "window_size": timedelta(seconds=10),
        "bucket_size": 5,
        "key_prefix": "test:",
        "ttl_buffer_seconds": 5,
    }


def test_convert_config_wrong_type():
    with pytest.raises(RateLimitError, match="expected SlidingWindowLogConfig"):
        SlidingWindowLogConstructor().convert_config(SlidingWindowCounterConfig())