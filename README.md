# ratelimitd

`ratelimitd` is a small HTTP service that decides whether a client may make
another request. It keeps its counters in Redis, so several instances of the
service can share the same limits.

Two strategies are available:

- **sliding_window_log**: keeps a timestamp for each accepted request in a
  Redis sorted set and counts the ones that fall inside the window.
- **sliding_window_counter** (the default): keeps one counter for the current
  window and one for the previous window. The previous count is weighted by
  how much of the previous window still overlaps the sliding window.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Running

Redis must be reachable before you start the service, because the service
pings it at startup and stops with an error if the ping fails. To start the
service, run:

```
ratelimitd
```

By default the service listens on `:8080`, which means every interface, port
8080. It runs until it receives SIGINT or SIGTERM. It then stops the HTTP
server and closes the Redis connection.

## Configuration

`ratelimitd.config.load(base_dir=None, environ=None)` builds a `Config`. It
reads these sources in order, and a later source overrides an earlier one:

1. Built-in defaults.
2. `config.yaml` or `config.yml`, taken from the base directory or from its
   `config` subdirectory. The base directory is the working directory unless
   `base_dir` is given.
3. A `.env` file in the base directory, if one exists. Its keys are dotted
   paths, for example `redis.host=cache.internal`.
4. Environment variables. Each one is named `GO_` followed by the setting's
   path, with the parts joined by `_` and written in upper case. Some examples:
   - `GO_SERVER_PORT`
   - `GO_REDIS_HOST`
   - `GO_REDIS_PORT`
   - `GO_REDIS_PASSWORD`
   - `GO_REDIS_DB`
   - `GO_RATE_LIMITER_STRATEGY`
   - `GO_RATE_LIMITER_STRATEGIES_SLIDING_WINDOW_COUNTER_BUCKET_SIZE`

   A variable that is set to an empty value is ignored.

If a source cannot be read or decoded, `load` raises `ConfigError`.

The following `config.yaml` repeats the defaults:

```yaml
server:
  port: ":8080"
redis:
  host: localhost
  port: 6379
  db: 0
rate_limiter:
  strategy: sliding_window_counter
  strategies:
    sliding_window_log:
      key_prefix: "rl:swl:"
      ttl_buffer_seconds: 30
      window_size_seconds: 3600
      bucket_size: 1000
    sliding_window_counter:
      key_prefix: "rl:swc:"
      ttl_buffer_seconds: 15
      window_size_seconds: 3600
      bucket_size: 1000
```

## Endpoints

| Method | Path                | Purpose                                                |
|--------|---------------------|--------------------------------------------------------|
| GET    | `/`                 | Service name, version and status                       |
| GET    | `/health`           | Liveness check: `{"status": "ok"}`                     |
| POST   | `/rate-limit`       | Check one request for the calling client and count it  |
| POST   | `/rate-limit/reset` | Clear the counters for the calling client              |
| GET    | `/metrics`          | Metrics in Prometheus text format                      |
| GET    | `/api/unrestricted` | Demo resource with no limit                            |
| GET    | `/api/restricted`   | Demo resource behind the rate limiter                  |

The client is identified by the `X-Client-ID` header. If that header is
missing, the remote address is used instead.

### Rate limit responses

`/rate-limit` answers with JSON of the form
`{"allowed": ..., "metadata": {...}}`:

- An allowed request gets status `200`.
- A denied request gets status `429`.
- If the limiter fails, the status is `500` and the body is
  `{"error": "Rate limiter error", "message": ...}`.

`/api/restricted` answers a denied request with status `429` and the body
`{"message": "Too many requests"}`.

Every rate-limited response carries these headers:

- `RateLimit-Limit`
- `RateLimit-Remaining`
- `RateLimit-Reset`: whole seconds until the window resets. It is never
  negative.
- `Retry-After`: whole seconds to wait. It is sent only when the request is
  denied.

### Metrics

`/metrics` exposes two metric families:

- `rate_limit_requests_total`: a counter, labelled by `strategy` and by
  `decision` (`allowed` or `denied`).
- `rate_limit_duration_seconds`: a histogram, labelled by `strategy`.

## Using it as a library

- `ratelimitd.server.create_app(rate_limiter, collector=None)` builds the
  Flask application around any `ratelimitd.limits.RateLimiter`. A
  `RateLimiter` provides `is_allowed(key, timestamp)` and `reset(key)`.
  `/metrics` has content only when `collector` is a
  `ratelimitd.metrics.PrometheusCollector`.
- `ratelimitd.middleware.rate_limit(rate_limiter, config=None)` returns a
  decorator that puts the same check in front of your own Flask views.
  `RateLimitConfig` sets three things:
  - `key_extractor`: how a caller is identified.
  - `on_limit_reached`: what a denied request receives.
  - `skip_successful_requests`
- `ratelimitd.factory.Factory` creates limiters by strategy name from a
  settings mapping. `ConfigBasedStrategyManager` builds the limiter that the
  configuration names. Its `update_strategy(strategy, config)` validates
  another strategy and switches to it while the process runs.
- `SlidingWindowLogRateLimiter` and `SlidingWindowCounterRateLimiter` can be
  built directly. Each takes its settings dataclass and a `redis.Redis`
  client.

## What it does not do

- **No token bucket strategy.** The configuration has a `token_bucket`
  section, but no strategy by that name is registered. If you set
  `rate_limiter.strategy` to `token_bucket`, startup fails with
  "unknown strategy".
- **Strategy changes are not saved.** A change made with `update_strategy`
  lives only in memory. No HTTP endpoint calls it.
- **No TLS or authentication.** The service provides neither.