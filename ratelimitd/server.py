"""Application wiring and the server entry point."""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from collections.abc import Sequence
from typing import Any

import redis
from flask import Flask, Response, jsonify
from werkzeug.serving import make_server

from .config import Config, RedisConfig, load
from .factory import ConfigBasedStrategyManager
from .handlers import DemoHandler, RateLimitHandler, health, metrics_view
from .limits import RateLimiter, RateLimitError
from .metrics import Collector, NoopCollector, PrometheusCollector
from .middleware import rate_limit

logger = logging.getLogger(__name__)

SERVICE_NAME = "ratelimitd"
SERVICE_VERSION = "1.0.0"
REDIS_TIMEOUT_SECONDS = 5.0
SHUTDOWN_TIMEOUT_SECONDS = 30.0


def _index() -> Response:
    return jsonify(service=SERVICE_NAME, version=SERVICE_VERSION, status="running")


def create_app(rate_limiter: RateLimiter, collector: Collector | None = None) -> Flask:
    """Build the Flask application serving every route."""
    app = Flask(SERVICE_NAME)
    limits = RateLimitHandler(rate_limiter)
    demo = DemoHandler()
    metrics = metrics_view(collector if collector is not None else NoopCollector())

    app.add_url_rule("/health", "health", health, methods=["GET"])
    app.add_url_rule("/", "index", _index, methods=["GET"])
    app.add_url_rule("/rate-limit", "rate_limit", limits.rate_limit, methods=["POST"])
    app.add_url_rule(
        "/rate-limit/reset", "reset_rate_limit", limits.reset_rate_limit, methods=["POST"]
    )
    app.add_url_rule("/metrics", "metrics", metrics, methods=["GET"])
    app.add_url_rule(
        "/api/unrestricted", "unrestricted", demo.unrestricted_resource, methods=["GET"]
    )
    app.add_url_rule(
        "/api/restricted",
        "restricted",
        rate_limit(rate_limiter)(demo.restricted_resource),
        methods=["GET"],
    )
    return app


def _connect(settings: RedisConfig) -> redis.Redis:
    return redis.Redis(
        host=settings.host,
        port=settings.port,
        password=settings.password or None,
        db=settings.db,
        socket_connect_timeout=REDIS_TIMEOUT_SECONDS,
        socket_timeout=REDIS_TIMEOUT_SECONDS,
    )


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid listen address: {address!r}")
    host = host.strip("[]")
    return host or "0.0.0.0", int(port)


class Server:
    """The rate limiting service: Redis connection, limiter and HTTP app."""

    def __init__(self, config: Config, redis_client: Any = None) -> None:
        self.config = config
        self.redis_client = redis_client if redis_client is not None else _connect(config.redis)
        try:
            self.redis_client.ping()
        except (redis.RedisError, OSError) as exc:
            raise RuntimeError(
                f"failed to setup redis: failed to connect to Redis: {exc}"
            ) from exc

        self.collector = PrometheusCollector()
        self.strategy_manager = ConfigBasedStrategyManager(
            config.rate_limiter, self.redis_client, self.collector
        )
        try:
            self.rate_limiter = self.strategy_manager.current_strategy()
        except RateLimitError as exc:
            raise RuntimeError(
                f"failed to get rate limiter from strategy manager: {exc}"
            ) from exc
        self.app = create_app(self.rate_limiter, self.collector)
        self._stopping = threading.Event()

    def _install_signal_handlers(self) -> dict[int, Any]:
        if threading.current_thread() is not threading.main_thread():
            return {}

        def request_stop(signum: int, frame: Any) -> None:
            self._stopping.set()

        return {
            signum: signal.signal(signum, request_stop)
            for signum in (signal.SIGINT, signal.SIGTERM)
        }

    def run(self) -> None:
        """Serve until SIGINT or SIGTERM, then shut down and close Redis."""
        host, port = _split_address(self.config.server.port)
        http_server = make_server(host, port, self.app, threaded=True)
        worker = threading.Thread(target=http_server.serve_forever, daemon=True)
        previous = self._install_signal_handlers()
        try:
            logger.info("Starting server on %s", self.config.server.port)
            worker.start()
            self._stopping.wait()
            logger.info("Shutting down server...")
            http_server.shutdown()
            worker.join(SHUTDOWN_TIMEOUT_SECONDS)
            http_server.server_close()
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)

        try:
            self.redis_client.close()
        except (redis.RedisError, OSError) as exc:
            logger.warning("Error closing Redis connection: %s", exc)
        logger.info("Server exited")


def main(argv: Sequence[str] | None = None) -> int:
    """Load the configuration and run the service."""
    parser = argparse.ArgumentParser(
        prog=SERVICE_NAME,
        description="HTTP rate limiting service backed by Redis.",
    )
    parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")
    Server(load()).run()
    return 0