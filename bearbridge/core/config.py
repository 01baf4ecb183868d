"""
BearBridge Configuration
------------------------
Centralized configuration for the callback engine, the Bear facade, the
database read path and logging. Loads from environment variables and YAML
config files.
"""

import os
import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from bearbridge.platform import default_bear_database_path

logger = logging.getLogger("BearBridge.Config")

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_PAYLOAD_WARN_BYTES = 256 * 1024
SUPPORTED_LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


def _parse_positive_float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
        if value <= 0:
            raise ValueError
        return value
    except ValueError:
        logger.warning(
            "Invalid %s value '%s'; expected positive float. Using %s.",
            name,
            raw,
            default,
        )
        return default


def _parse_positive_int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
        if value <= 0:
            raise ValueError
        return value
    except ValueError:
        logger.warning(
            "Invalid %s value '%s'; expected positive integer. Using %s.",
            name,
            raw,
            default,
        )
        return default


def _normalize_log_level(level: Optional[str], default: str = "info") -> str:
    candidate = (level or "").strip().lower()
    if candidate in SUPPORTED_LOG_LEVELS:
        return candidate
    if candidate:
        logger.warning(
            "Unsupported log level '%s'; expected one of %s. Falling back to '%s'.",
            candidate,
            SUPPORTED_LOG_LEVELS,
            default,
        )
    return default


class CallbackConfig(BaseModel):
    """Ephemeral callback listener and correlation deadline."""
    host: str = "127.0.0.1"
    timeout_seconds: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)
    payload_warn_bytes: int = Field(default=DEFAULT_PAYLOAD_WARN_BYTES, gt=0)
    shutdown_grace_seconds: float = Field(default=1.0, ge=0)


class BearConfig(BaseModel):
    """Bear application integration."""
    scheme: str = "bear"
    token: Optional[str] = None
    open_command: Optional[str] = None
    database_path: Optional[str] = None


class LoggingConfig(BaseModel):
    level: str = "info"
    log_file: Optional[str] = None


class BridgeConfig(BaseModel):
    """Root configuration for the bridge."""
    callback: CallbackConfig = Field(default_factory=CallbackConfig)
    bear: BearConfig = Field(default_factory=BearConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls) -> "BridgeConfig":
        """
        Load configuration from environment variables.

        Environment variables override defaults:
        - BEAR_BRIDGE_TOKEN (or BEAR_API_TOKEN): Bear API token
        - BEAR_BRIDGE_TIMEOUT: Seconds to wait for a callback
        - BEAR_BRIDGE_CALLBACK_HOST: Interface the callback listener binds
        - BEAR_BRIDGE_PAYLOAD_WARN_BYTES: Callback size that triggers a warning
        - BEAR_BRIDGE_OPEN_COMMAND: Executable used to dispatch bear:// URLs
        - BEAR_BRIDGE_DB_PATH: Bear SQLite database path
        - BEAR_BRIDGE_LOG_LEVEL / BEAR_BRIDGE_LOG_FILE: Logging
        """
        token = os.environ.get("BEAR_BRIDGE_TOKEN") or os.environ.get("BEAR_API_TOKEN")
        return cls(
            callback=CallbackConfig(
                host=os.environ.get("BEAR_BRIDGE_CALLBACK_HOST", "127.0.0.1"),
                timeout_seconds=_parse_positive_float_env("BEAR_BRIDGE_TIMEOUT", DEFAULT_TIMEOUT_SECONDS),
                payload_warn_bytes=_parse_positive_int_env(
                    "BEAR_BRIDGE_PAYLOAD_WARN_BYTES", DEFAULT_PAYLOAD_WARN_BYTES
                ),
            ),
            bear=BearConfig(
                token=token or None,
                open_command=os.environ.get("BEAR_BRIDGE_OPEN_COMMAND") or None,
                database_path=os.environ.get("BEAR_BRIDGE_DB_PATH") or None,
            ),
            logging=LoggingConfig(
                level=_normalize_log_level(os.environ.get("BEAR_BRIDGE_LOG_LEVEL")),
                log_file=os.environ.get("BEAR_BRIDGE_LOG_FILE") or None,
            ),
        )

    @classmethod
    def from_yaml(cls, path: str) -> "BridgeConfig":
        """Load configuration from a YAML file."""
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
            return cls(**data)
        except FileNotFoundError:
            logger.warning("Config file not found: %s; using environment", path)
            return cls.from_env()

    def with_overrides(
        self,
        *,
        token: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        database_path: Optional[str] = None,
        log_level: Optional[str] = None,
        log_file: Optional[str] = None,
    ) -> "BridgeConfig":
        """Return a copy with command-line overrides applied."""
        config = self.model_copy(deep=True)
        if token:
            config.bear.token = token
        if timeout_seconds is not None:
            config.callback.timeout_seconds = timeout_seconds
        if database_path:
            config.bear.database_path = database_path
        if log_level:
            config.logging.level = _normalize_log_level(log_level)
        if log_file:
            config.logging.log_file = log_file
        return config

    def resolved_database_path(self) -> Path:
        if self.bear.database_path:
            return Path(self.bear.database_path).expanduser()
        return default_bear_database_path()
