"""Service configuration: defaults, YAML file, .env file and environment."""

import copy
import os
from collections.abc import Iterator, Mapping
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from dotenv import dotenv_values

ENV_PREFIX = "GO"
_CONFIG_FILE_NAMES = ("config.yaml", "config.yml")
_DOTENV_NAME = ".env"


class ConfigError(Exception):
    """Raised when the configuration cannot be read or decoded."""


@dataclass
class ServerConfig:
    port: str = ":8080"


@dataclass
class RedisConfig:
    host: str = "localhost"
    port: int = 6379
    password: str = ""
    db: int = 0


@dataclass
class TokenBucketConfig:
    key_prefix: str = "rl:tb:"
    ttl_buffer_seconds: int = 5
    bucket_size: int = 100
    refill_rate_per_second: int = 10


@dataclass
class SlidingWindowLogConfig:
    key_prefix: str = "rl:swl:"
    ttl_buffer_seconds: int = 30
    window_size_seconds: int = 3600
    bucket_size: int = 1000


@dataclass
class SlidingWindowCounterConfig:
    key_prefix: str = "rl:swc:"
    ttl_buffer_seconds: int = 15
    window_size_seconds: int = 3600
    bucket_size: int = 1000


@dataclass
class RateLimiterStrategiesConfig:
    token_bucket: TokenBucketConfig = field(default_factory=TokenBucketConfig)
    sliding_window_log: SlidingWindowLogConfig = field(default_factory=SlidingWindowLogConfig)
    sliding_window_counter: SlidingWindowCounterConfig = field(
        default_factory=SlidingWindowCounterConfig
    )


@dataclass
class RateLimiterConfig:
    strategy: str = "sliding_window_counter"
    strategies: RateLimiterStrategiesConfig = field(default_factory=RateLimiterStrategiesConfig)


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    rate_limiter: RateLimiterConfig = field(default_factory=RateLimiterConfig)


def load(base_dir: Union[str, "os.PathLike[str]", None] = None,
         environ: Optional[Mapping[str, str]] = None) -> Config:
    """Load the configuration.

    Precedence, lowest first: built-in defaults, ``config.yaml`` (in
    ``base_dir`` or ``base_dir/config``), ``.env`` in ``base_dir``, and
    ``GO_``-prefixed environment variables.
    """
    base = Path.cwd() if base_dir is None else Path(base_dir)
    env = os.environ if environ is None else environ

    defaults = asdict(Config())
    settings = copy.deepcopy(defaults)
    _merge(settings, _read_config_file(base))
    _merge(settings, _read_dotenv(base))
    for path in _leaf_paths(defaults):
        value = env.get(ENV_PREFIX + "_" + "_".join(path).upper())
        if value:
            _set_path(settings, path, value)
    return _build(Config, settings, "")


def _read_config_file(base: Path) -> dict:
    for directory in (base, base / "config"):
        for name in _CONFIG_FILE_NAMES:
            path = directory / name
            if not path.is_file():
                continue
            try:
                with path.open(encoding="utf-8") as handle:
                    data = yaml.safe_load(handle)
            except (yaml.YAMLError, OSError) as exc:
                raise ConfigError(f"failed to read config file: {exc}") from exc
            if data is None:
                return {}
            if not isinstance(data, Mapping):
                raise ConfigError(
                    f"failed to read config file: {path} does not hold a mapping"
                )
            return _normalise(data)
    return {}


def _read_dotenv(base: Path) -> dict:
    path = base / _DOTENV_NAME
    if not path.exists():
        return {}
    try:
        values = dotenv_values(path)
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"failed to read .env file: {exc}") from exc
    result: dict = {}
    for key, value in values.items():
        if value is not None:
            _set_path(result, tuple(key.lower().split(".")), value)
    return result


def _normalise(data: Mapping) -> dict:
    return {
        str(key).lower(): _normalise(value) if isinstance(value, Mapping) else value
        for key, value in data.items()
    }


def _merge(target: dict, source: Mapping) -> None:
    for key, value in source.items():
        if isinstance(value, Mapping) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


def _leaf_paths(tree: Mapping, prefix: tuple = ()) -> Iterator[tuple]:
    for key, value in tree.items():
        if isinstance(value, Mapping):
            yield from _leaf_paths(value, prefix + (key,))
        else:
            yield prefix + (key,)


def _set_path(tree: dict, path: tuple, value: Any) -> None:
    *parents, leaf = path
    node = tree
    for part in parents:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[leaf] = value


def _build(cls: type, data: Any, where: str) -> Any:
    if not isinstance(data, Mapping):
        raise ConfigError(
            f"failed to unmarshal config: '{where or '<root>'}' expected a map, "
            f"got {type(data).__name__}"
        )
    kwargs: dict = {}
    for item in fields(cls):
        value = data.get(item.name)
        if value is None:
            continue
        path = f"{where}.{item.name}" if where else item.name
        kind = item.type
        if is_dataclass(kind):
            kwargs[item.name] = _build(kind, value, path)
        elif kind is int:
            kwargs[item.name] = _to_int(value, path)
        else:
            kwargs[item.name] = _to_str(value, path)
    return cls(**kwargs)


def _to_int(value: Any, path: str) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        if value == "":
            return 0
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(
                f"failed to unmarshal config: '{path}' cannot parse {value!r} as int"
            ) from exc
    raise ConfigError(
        f"failed to unmarshal config: '{path}' expected int, got {type(value).__name__}"
    )


def _to_str(value: Any, path: str) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    raise ConfigError(
        f"failed to unmarshal config: '{path}' expected string, got {type(value).__name__}"
    )