"""Strategy registry and the configuration-driven strategy manager."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

from .config import RateLimiterConfig
from .limits import MetricsDecorator, RateLimiter, RateLimitError, StrategyConstructor
from .metrics import Collector, NoopCollector, PrometheusCollector
from .sliding_window_counter import SlidingWindowCounterConstructor
from .sliding_window_log import SlidingWindowLogConstructor

_CONFIG_SECTIONS = frozenset({"token_bucket", "sliding_window_log", "sliding_window_counter"})


class Factory:
    """Creates rate limiters by strategy name."""

    def __init__(self, redis_client: Any) -> None:
        self.redis_client = redis_client
        self.strategies: dict[str, StrategyConstructor] = {}
        self.metrics_collector: Collector | None = NoopCollector()
        for constructor in (SlidingWindowLogConstructor(), SlidingWindowCounterConstructor()):
            self.register_strategy(constructor)

    def register_strategy(self, constructor: StrategyConstructor) -> None:
        self.strategies[constructor.name()] = constructor

    def create_rate_limiter(self, strategy: str, config: Mapping[str, Any]) -> RateLimiter:
        constructor = self.strategies.get(strategy)
        if constructor is None:
            raise RateLimitError(f"unsupported rate limiter strategy: {strategy}")
        rate_limiter = constructor.new_from_config(config, self.redis_client)
        if self.metrics_collector is not None:
            return MetricsDecorator(rate_limiter, self.metrics_collector, strategy)
        return rate_limiter

    def available_strategies(self) -> list[str]:
        return list(self.strategies)

    def with_metrics(self, collector: Collector | None) -> Factory:
        self.metrics_collector = collector
        return self


class StrategyManager(ABC):
    """Supplies the rate limiter the service should use."""

    @abstractmethod
    def current_strategy(self) -> RateLimiter:
        """Build the rate limiter for the configured strategy."""

    @abstractmethod
    def update_strategy(self, strategy: str, config: Mapping[str, Any]) -> None:
        """Switch to another strategy."""

    @abstractmethod
    def available_strategies(self) -> list[str]:
        """Names of the strategies that can be used."""


class ConfigBasedStrategyManager(StrategyManager):
    """Chooses the strategy from the loaded configuration."""

    def __init__(
        self,
        config: RateLimiterConfig,
        redis_client: Any,
        collector: Collector | None = None,
    ) -> None:
        self.config = config
        self.redis_client = redis_client
        self.factory = Factory(redis_client).with_metrics(
            PrometheusCollector() if collector is None else collector
        )
        self._override: tuple[str, dict[str, Any]] | None = None

    def current_strategy(self) -> RateLimiter:
        if self._override is not None:
            strategy, strategy_config = self._override
            return self.factory.create_rate_limiter(strategy, strategy_config)

        strategy = self.config.strategy
        constructor = self.factory.strategies.get(strategy)
        if constructor is None or strategy not in _CONFIG_SECTIONS:
            raise RateLimitError(f"unknown strategy: {strategy}")
        try:
            strategy_config = constructor.convert_config(
                getattr(self.config.strategies, strategy)
            )
        except RateLimitError as exc:
            raise RateLimitError(
                f"failed to convert config for strategy {strategy}: {exc}"
            ) from exc
        return self.factory.create_rate_limiter(strategy, strategy_config)

    def update_strategy(self, strategy: str, config: Mapping[str, Any]) -> None:
        """Validate the strategy and its settings, then use them from now on."""
        if strategy not in self.factory.strategies:
            raise RateLimitError(f"unknown strategy: {strategy}")
        strategy_config = dict(config)
        # Building a limiter validates the settings before they are kept.
        self.factory.create_rate_limiter(strategy, strategy_config)
        self._override = (strategy, strategy_config)

    def available_strategies(self) -> list[str]:
        return self.factory.available_strategies()