"""Decorator that applies a rate limiter to Flask views."""

from __future__ import annotations

import functools
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from flask import Response, after_this_request, jsonify, make_response

from .handlers import client_key, set_rate_limit_headers
from .limits import RateLimiter, RateLimitResponse


@dataclass
class RateLimitConfig:
    """How the rate limit decorator identifies callers and answers denials.

    ``skip_successful_requests`` makes allowed requests fall through to the
    view, with the headers attached once the response is finalised, instead
    of wrapping the view's response directly.
    """

    key_extractor: Callable[[], str] | None = None
    on_limit_reached: Callable[[RateLimitResponse], Any] | None = None
    skip_successful_requests: bool = False


def _default_on_limit_reached(result: RateLimitResponse) -> tuple[Response, int]:
    return jsonify(message="Too many requests"), 429


def _now() -> datetime:
    return datetime.now(timezone.utc)


def rate_limit(
    rate_limiter: RateLimiter, config: RateLimitConfig | None = None
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Return a decorator that rate limits the view it wraps."""
    cfg = config if config is not None else RateLimitConfig()
    extract_key = cfg.key_extractor or client_key
    on_limit_reached = cfg.on_limit_reached or _default_on_limit_reached

    def decorator(view: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(view)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            key = extract_key()
            try:
                result = rate_limiter.is_allowed(key, _now())
            except Exception as exc:  # any backend failure becomes a 500
                return jsonify(error="Rate limiter error", message=str(exc)), 500

            if not result.allowed:
                response = make_response(on_limit_reached(result))
                set_rate_limit_headers(response, result, _now())
                return response

            if cfg.skip_successful_requests:

                @after_this_request
                def _attach_headers(response: Response) -> Response:
                    set_rate_limit_headers(response, result, _now())
                    return response

                return view(*args, **kwargs)

            response = make_response(view(*args, **kwargs))
            set_rate_limit_headers(response, result, _now())
            return response

        return wrapper

    return decorator