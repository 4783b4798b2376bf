"""HTTP views: health, metrics, rate limit checks and demo resources."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from flask import Response, jsonify, request

from .limits import RateLimiter, RateLimitResponse
from .metrics import CONTENT_TYPE_LATEST, Collector, PrometheusCollector

CLIENT_ID_HEADER = "X-Client-ID"


def client_key() -> str:
    """Identify the caller by ``X-Client-ID``, falling back to its address."""
    client_id = request.headers.get(CLIENT_ID_HEADER, "")
    return client_id or (request.remote_addr or "")


def _aware(moment: datetime) -> datetime:
    return moment.astimezone() if moment.tzinfo is None else moment


def _whole_seconds(delta: timedelta) -> int:
    return max(int(delta.total_seconds()), 0)


def set_rate_limit_headers(
    response: Response, result: RateLimitResponse, now: datetime
) -> None:
    """Add the ``RateLimit-*`` and ``Retry-After`` headers to ``response``."""
    response.headers["RateLimit-Limit"] = str(result.limit)
    response.headers["RateLimit-Remaining"] = str(result.remaining)
    reset = _whole_seconds(_aware(result.reset_time) - _aware(now))
    response.headers["RateLimit-Reset"] = str(reset)
    if not result.allowed and result.retry_after is not None:
        response.headers["Retry-After"] = str(_whole_seconds(result.retry_after))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _utc_timestamp() -> str:
    return _utc_now().isoformat().replace("+00:00", "Z")


def _error(title: str, exc: Exception) -> tuple[Response, int]:
    return jsonify(error=title, message=str(exc)), 500


def health() -> tuple[Response, int]:
    """Liveness probe."""
    return jsonify(status="ok"), 200


def metrics_view(collector: Collector) -> Callable[[], Response]:
    """Build a view that exposes ``collector`` in the Prometheus text format."""

    def metrics() -> Response:
        body = collector.render() if isinstance(collector, PrometheusCollector) else ""
        return Response(body, status=200, content_type=CONTENT_TYPE_LATEST)

    return metrics


class RateLimitHandler:
    """Views that check and reset the caller's rate limit."""

    def __init__(self, rate_limiter: RateLimiter) -> None:
        self.rate_limiter = rate_limiter

    def rate_limit(self) -> Response | tuple[Response, int]:
        key = client_key()
        try:
            result = self.rate_limiter.is_allowed(key, _utc_now())
        except Exception as exc:  # any backend failure becomes a 500
            return _error("Rate limiter error", exc)
        response = jsonify(allowed=result.allowed, metadata=result.metadata)
        response.status_code = 200 if result.allowed else 429
        set_rate_limit_headers(response, result, _utc_now())
        return response

    def reset_rate_limit(self) -> tuple[Response, int]:
        key = client_key()
        try:
            self.rate_limiter.reset(key)
        except Exception as exc:  # any backend failure becomes a 500
            return _error("Reset error", exc)
        return jsonify(message="Rate limit reset successfully", client_id=key), 200


class DemoHandler:
    """Sample resources, one with and one without rate limiting."""

    @staticmethod
    def _describe(message: str, resource_id: str, content: str, access: str) -> Response:
        return jsonify(
            message=message,
            timestamp=_utc_timestamp(),
            path=request.path,
            client_ip=request.remote_addr or "",
            user_agent=request.headers.get("User-Agent", ""),
            data={
                "resource_id": resource_id,
                "content": content,
                "access_count": access,
            },
        )

    def unrestricted_resource(self) -> Response:
        return self._describe(
            "Access granted to unrestricted resource",
            "unrestricted-001",
            "This resource has no rate limiting applied",
            "unlimited",
        )

    def restricted_resource(self) -> Response:
        return self._describe(
            "Access granted to restricted resource",
            "restricted-001",
            "This resource is protected by rate limiting",
            "limited by rate limiter",
        )