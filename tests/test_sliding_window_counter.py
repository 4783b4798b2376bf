from datetime import datetime, timedelta, timezone

import pytest

from ratelimitd.config import SlidingWindowCounterConfig
from ratelimitd.limits import DEFAULT_TTL_BUFFER_SECONDS, RateLimitError
from ratelimitd.sliding_window_counter import (
    SlidingWindowCounterConstructor,
    SlidingWindowCounterRateLimiter,
    SlidingWindowCounterSettings,
)

NS = 1_000_000_000
# 2024-01-01T00:00:00Z, a multiple of ten seconds since the epoch.
BASE_SECONDS = 1_704_067_200


class FakeRedis:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.eval_calls = []
        self.deleted = []

    def eval(self, script, numkeys, *keys_and_args):
        self.eval_calls.append((script, numkeys, keys_and_args))
        if self.error is not None:
            raise self.error
        return self.reply

    def delete(self, *keys):
        self.deleted.append(keys)
        return len(keys)


def make_settings(**overrides):
    values = dict(
        window_size=timedelta(seconds=10),
        bucket_size=5,
        key_prefix="test:",
        ttl_buffer_seconds=5,
    )
    values.update(overrides)
    return SlidingWindowCounterSettings(**values)


def make_limiter(redis=None, **overrides):
    return SlidingWindowCounterRateLimiter(make_settings(**overrides), redis or FakeRedis())


def at(seconds_into_window):
    return datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=seconds_into_window)


@pytest.mark.parametrize(
    "overrides, ttl",
    [
        ({}, 5),
        ({"ttl_buffer_seconds": 0}, DEFAULT_TTL_BUFFER_SECONDS),
    ],
    ids=["valid config", "default ttl buffer"],
)
def test_new_limiter_valid(overrides, ttl):
    limiter = make_limiter(**overrides)
    assert limiter.bucket_size == 5
    assert limiter.window_size_nanos == 10 * NS
    assert limiter.key_prefix == "test:"
    assert limiter.ttl_buffer == ttl


@pytest.mark.parametrize(
    "overrides",
    [{"window_size": timedelta(0)}, {"bucket_size": 0}],
    ids=["invalid window size", "invalid bucket size"],
)
def test_new_limiter_invalid(overrides):
    with pytest.raises(RateLimitError, match="invalid configuration"):
        make_limiter(**overrides)


def test_new_limiter_requires_redis():
    with pytest.raises(RateLimitError, match="invalid configuration"):
        SlidingWindowCounterRateLimiter(make_settings(), None)


@pytest.mark.parametrize(
    "current, previous, low, high",
    [
        (5, 0, timedelta(0), timedelta(seconds=10)),
        (3, 4, timedelta(seconds=-10), timedelta(seconds=10)),
        (5, 1, timedelta(0), timedelta(seconds=10)),
    ],
)
def test_calculate_retry_after_bounds(current, previous, low, high):
    limiter = make_limiter()
    now = BASE_SECONDS * NS + 3_456_789_000
    start = (now // limiter.window_size_nanos) * limiter.window_size_nanos
    result = limiter.calculate_retry_after(current, previous, start, now)
    assert low <= result <= high


@pytest.mark.parametrize(
    "current, previous, expected",
    [
        (5, 0, timedelta(seconds=8)),
        (3, 4, timedelta(seconds=3)),
        (5, 1, timedelta(seconds=8)),
    ],
)
def test_calculate_retry_after_values(current, previous, expected):
    limiter = make_limiter()
    assert limiter.calculate_retry_after(current, previous, 0, 2 * NS) == expected


def test_allowed_response_and_script_arguments():
    redis = FakeRedis(reply=[1, 2, 0, 2, 1, 2])
    limiter = make_limiter(redis)
    response = limiter.is_allowed("client", at(5))

    assert response.allowed is True
    assert response.limit == 5
    assert response.remaining == 2
    assert response.retry_after is None
    assert response.reset_time == at(10)
    assert response.metadata == {
        "weighted_count": 2,
        "current_count": 2,
        "previous_count": 1,
        "window_progress": 0.5,
        "window_size": 10,
    }

    (_, numkeys, args), = redis.eval_calls
    start = BASE_SECONDS * NS
    assert numkeys == 1
    assert args == ("test::client", start, start - 10 * NS, 5, 10 * NS, 25, 0.5)


def test_allowed_without_remaining_defaults_to_zero():
    limiter = make_limiter(FakeRedis(reply=[1, 1, 0, 1, 0]))
    response = limiter.is_allowed("client", at(1))
    assert response.allowed is True
    assert response.remaining == 0


def test_denied_response_with_previous_count():
    reset_nanos = (BASE_SECONDS + 10) * NS
    limiter = make_limiter(FakeRedis(reply=[0, 5, reset_nanos, 3, 3]))
    response = limiter.is_allowed("client", at(2))

    assert response.allowed is False
    assert response.limit == 5
    assert response.remaining == 0
    assert response.reset_time == at(10)
    assert response.retry_after == timedelta(microseconds=1_333_333)
    assert response.metadata["weighted_count"] == 5
    assert response.metadata["current_count"] == 3
    assert response.metadata["previous_count"] == 3


def test_denied_response_without_previous_count_waits_for_next_window():
    reset_nanos = (BASE_SECONDS + 10) * NS
    limiter = make_limiter(FakeRedis(reply=[0, 5, reset_nanos, 5, 0]))
    response = limiter.is_allowed("client", at(2))
    assert response.retry_after == timedelta(seconds=8)


@pytest.mark.parametrize("reply", ["bad", [1, 2, 0], None])
def test_invalid_reply_raises(reply):
    limiter = make_limiter(FakeRedis(reply=reply))
    with pytest.raises(RateLimitError, match="invalid redis response"):
        limiter.is_allowed("client", at(1))


def test_unparsable_reply_field_raises():
    limiter = make_limiter(FakeRedis(reply=[1, "two", 0, 2, 1, 2]))
    with pytest.raises(RateLimitError, match="failed to parse weighted count"):
        limiter.is_allowed("client", at(1))


def test_backend_error_propagates():
    error = ConnectionError("redis down")
    limiter = make_limiter(FakeRedis(error=error))
    with pytest.raises(ConnectionError, match="redis down"):
        limiter.is_allowed("client", at(1))


def test_reset_deletes_both_window_keys():
    redis = FakeRedis()
    make_limiter(redis).reset("client")
    assert redis.deleted == [("test::client:current", "test::client:previous")]


def test_constructor_name():
    assert SlidingWindowCounterConstructor().name() == "sliding_window_counter"


def test_constructor_builds_limiter():
    config = {
        "window_size": timedelta(seconds=10),
        "bucket_size": 5,
        "key_prefix": "test:",
        "ttl_buffer_seconds": 5,
    }
    limiter = SlidingWindowCounterConstructor().new_from_config(config, FakeRedis())
    assert isinstance(limiter, SlidingWindowCounterRateLimiter)
    assert limiter.window_size_nanos == 10 * NS
    assert limiter.bucket_size == 5
    assert limiter.ttl_buffer == 5


def test_constructor_missing_key():
    config = {"window_size": timedelta(seconds=10), "bucket_size": 5, "key_prefix": "x"}
    with pytest.raises(
        RateLimitError,
        match="sliding window counter strategy: required config key 'ttl_buffer_seconds'",
    ):
        SlidingWindowCounterConstructor().new_from_config(config, FakeRedis())


def test_constructor_wrong_duration_type():
    config = {"window_size": 10, "bucket_size": 5, "key_prefix": "x", "ttl_buffer_seconds": 1}
    with pytest.raises(RateLimitError, match="must be a timedelta"):
        SlidingWindowCounterConstructor().new_from_config(config, FakeRedis())


def test_convert_config():
    raw = SlidingWindowCounterConfig(
        key_prefix="test:", ttl_buffer_seconds=5, window_size_seconds=10, bucket_size=5
    )
    assert SlidingWindowCounterConstructor().convert_config(raw) == {
        "window_size": timedelta(seconds=10),
        "bucket_size": 5,
        "key_prefix": "test:",
        "ttl_buffer_seconds": 5,
    }


def test_convert_then_build_round_trip():
    constructor = SlidingWindowCounterConstructor()
    limiter = constructor.new_from_config(
        constructor.convert_config(SlidingWindowCounterConfig()), FakeRedis()
    )
    assert limiter.window_size_nanos == 3600 * NS
    assert limiter.bucket_size == 1000
    assert limiter.key_prefix == "rl:swc:"
    assert limiter.ttl_buffer == 15


def test_convert_config_wrong_type():
    with pytest.raises(RateLimitError, match="expected SlidingWindowCounterConfig"):
        SlidingWindowCounterConstructor().convert_config({"bucket_size": 5})