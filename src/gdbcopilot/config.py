"""Application configuration.

Precedence, highest first: ``GDBCOPILOT_*`` environment variables, the JSON
file named by ``GDBCOPILOT_CONFIG`` (or ``configs/gdbcopilot.json`` in the
working tree), built-in defaults. Durations are in seconds.
"""
from __future__ import annotations

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .errors import ConfigError
from .llm.cache import CacheConfig
from .llm.context import ContextConfig
from .llm.providers import ProviderConfig, default_provider_configs
from .llm.resilience import CircuitBreakerConfig, RetryPolicy

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "GDBCOPILOT_CONFIG"
CONFIG_FILENAME = "gdbcopilot.json"
ENV_PREFIX = "GDBCOPILOT_"

LOG_LEVELS = {"debug", "info", "warning", "error", "critical"}


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    shutdown_grace: float = 5.0


@dataclass
class GdbConfig:
    path: str = "gdb"
    capture_timeout: float = 2.0
    stop_grace: float = 1.0
    subscriber_buffer: int = 100
    command_timeout: float = 30.0


@dataclass
class LogsConfig:
    level: str = "info"
    directory: str = "./logs"


@dataclass
class UploadsConfig:
    directory: str = "./uploads"
    max_file_size: int = 10 * 1024 * 1024


@dataclass
class ChatConfig:
    request_timeout: float = 120.0
    reformat_enabled: bool = True
    cache: CacheConfig = field(default_factory=CacheConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)


@dataclass
class AppConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    gdb: GdbConfig = field(default_factory=GdbConfig)
    logs: LogsConfig = field(default_factory=LogsConfig)
    uploads: UploadsConfig = field(default_factory=UploadsConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)
    providers: Dict[str, ProviderConfig] = field(default_factory=default_provider_configs)
    settings_file: Optional[str] = None
    api_key: Optional[str] = None
    source: str = "defaults"


def _coerce(section: str, key: str, current: Any, value: Any) -> Any:
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
    elif isinstance(current, int):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    elif isinstance(current, float):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    elif isinstance(current, str) or current is None:
        if isinstance(value, str) or (current is None and value is None):
            return value
        if current is None and isinstance(value, int) and not isinstance(value, bool):
            return value
    raise ConfigError(f"{section}.{key}: unexpected value {value!r}")


def _apply(obj: Any, data: Mapping[str, Any], section: str) -> None:
    names = {f.name for f in dataclasses.fields(obj)}
    for key, value in data.items():
        if key not in names:
            raise ConfigError(f"{section}: unknown key {key!r}")
        current = getattr(obj, key)
        if dataclasses.is_dataclass(current):
            if not isinstance(value, Mapping):
                raise ConfigError(f"{section}.{key}: expected an object")
            _apply(current, value, f"{section}.{key}")
        else:
            setattr(obj, key, _coerce(section, key, current, value))


def _apply_providers(cfg: AppConfig, data: Any) -> None:
    if not isinstance(data, Mapping):
        raise ConfigError("providers: expected an object")
    for name, section in data.items():
        if not isinstance(section, Mapping):
            raise ConfigError(f"providers.{name}: expected an object")
        provider = cfg.providers.get(name)
        if provider is None:
            raise ConfigError(f"providers: unknown provider {name!r}")
        _apply(provider, section, f"providers.{name}")


def find_config_file() -> Optional[Path]:
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        p = Path(env_path).expanduser()
        if not p.is_absolute():
            p = (Path.cwd() / p).resolve()
        if not p.exists():
            raise ConfigError(f"{CONFIG_ENV_VAR} points to a missing file: {p}")
        return p
    candidate = Path.cwd() / "configs" / CONFIG_FILENAME
    if candidate.exists():
        return candidate
    here = Path(__file__).resolve()
    for parent in here.parents:
        candidate = parent / "configs" / CONFIG_FILENAME
        if candidate.exists():
            return candidate
    return None


def _env_overrides(cfg: AppConfig, env: Mapping[str, str]) -> None:
    def get(name: str) -> Optional[str]:
        value = env.get(ENV_PREFIX + name)
        return value if value else None

    cfg.server.host = get("HOST") or cfg.server.host
    port = get("PORT")
    if port:
        try:
            cfg.server.port = int(port)
        except ValueError as e:
            raise ConfigError(f"{ENV_PREFIX}PORT: not an integer: {port!r}") from e
    cfg.gdb.path = get("GDB_PATH") or cfg.gdb.path
    cfg.logs.level = (get("LOG_LEVEL") or cfg.logs.level).lower()
    cfg.logs.directory = get("LOG_DIR") or cfg.logs.directory
    cfg.uploads.directory = get("UPLOAD_DIR") or cfg.uploads.directory
    cfg.settings_file = get("SETTINGS_FILE") or cfg.settings_file
    cfg.api_key = get("LLM_API_KEY") or cfg.api_key


def validate(cfg: AppConfig) -> None:
    if not (0 < cfg.server.port < 65536):
        raise ConfigError(f"server.port out of range: {cfg.server.port}")
    if cfg.logs.level not in LOG_LEVELS:
        raise ConfigError(f"logs.level must be one of {sorted(LOG_LEVELS)}")
    if cfg.gdb.capture_timeout <= 0:
        raise ConfigError("gdb.capture_timeout must be positive")
    if cfg.gdb.subscriber_buffer < 1:
        raise ConfigError("gdb.subscriber_buffer must be at least 1")
    if cfg.chat.request_timeout <= 0:
        raise ConfigError("chat.request_timeout must be positive")
    retry = cfg.chat.retry
    if retry.max_attempts < 1:
        raise ConfigError("chat.retry.max_attempts must be at least 1")
    if retry.base_delay < 0 or retry.max_delay < 0:
        raise ConfigError("chat.retry delays must not be negative")
    if retry.backoff_multiplier < 1:
        raise ConfigError("chat.retry.backoff_multiplier must be at least 1")
    if cfg.chat.circuit_breaker.failure_threshold < 1:
        raise ConfigError("chat.circuit_breaker.failure_threshold must be at least 1")
    if cfg.chat.circuit_breaker.timeout < 0:
        raise ConfigError("chat.circuit_breaker.timeout must not be negative")
    if cfg.chat.cache.ttl <= 0 or cfg.chat.cache.max_size < 1:
        raise ConfigError("chat.cache.ttl and chat.cache.max_size must be positive")
    ctx = cfg.chat.context
    if ctx.max_tokens < 1 or ctx.priority_recent_messages < 0 or ctx.compression_threshold < 0:
        raise ConfigError("chat.context limits must be positive")
    if cfg.uploads.max_file_size < 1:
        raise ConfigError("uploads.max_file_size must be positive")


def load_config(path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Build the configuration from defaults, the JSON file and the environment."""
    env = os.environ if env is None else env
    cfg = AppConfig()
    file_path = Path(path) if path else find_config_file()
    if file_path is not None:
        try:
            with Path(file_path).open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"cannot read config {file_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{file_path}: top level must be an object")
        providers = data.pop("providers", None)
        _apply(cfg, data, "config")
        if providers is not None:
            _apply_providers(cfg, providers)
        cfg.source = str(file_path)
    _env_overrides(cfg, env)
    validate(cfg)
    logger.debug("configuration loaded from %s", cfg.source)
    return cfg
