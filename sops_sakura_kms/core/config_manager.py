"""
Configuration management for sops-sakura-kms.

Loads the immutable wrapper configuration from environment variables.
Every option, its accepted variable names and its default are listed
explicitly in ``ConfigManager._load_from_env``.
"""

import os
import json
import logging
from typing import Any, Dict, Mapping, Optional, Sequence
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, ValidationError

from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)


KEY_ID_ENV_VARS = ("SAKURA_KMS_KEY_ID", "SAKURACLOUD_KMS_KEY_ID")
ACCESS_TOKEN_ENV = "SAKURACLOUD_ACCESS_TOKEN"
ACCESS_TOKEN_SECRET_ENV = "SAKURACLOUD_ACCESS_TOKEN_SECRET"
DEFAULT_SERVER_ADDR = "127.0.0.1:8200"
DEFAULT_COMMAND = "sops"
DEFAULT_KMS_ENDPOINT = "https://secure.sakura.ad.jp/cloud/zone/is1a/api/cloud/1.1"

_TRUE_VALUES = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_VALUES = {"0", "f", "F", "FALSE", "false", "False"}


class LogLevel(str, Enum):
    """Valid log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class KMSConfig(BaseModel):
    """Sakura Cloud KMS connection settings."""
    key_id: str = ""
    access_token: Optional[str] = None
    access_token_secret: Optional[str] = None
    endpoint: str = DEFAULT_KMS_ENDPOINT
    timeout: float = Field(default=30.0, gt=0.0, description="KMS API request timeout in seconds")

    model_config = ConfigDict(frozen=True)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: LogLevel = LogLevel.INFO
    format: str = "text"

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Only json and text formatters exist."""
        if v not in ("json", "text"):
            raise ValueError("Log format must be 'json' or 'text'")
        return v


class ServerConfig(BaseModel):
    """Transit server configuration."""
    addr: str = DEFAULT_SERVER_ADDR
    shutdown_timeout: float = Field(
        default=5.0,
        ge=0.0,
        description="Graceful shutdown timeout in seconds"
    )

    model_config = ConfigDict(frozen=True)

    @field_validator("addr")
    @classmethod
    def validate_addr(cls, v: str) -> str:
        """Validate host:port format."""
        host, sep, port = v.rpartition(":")
        if not sep or not host:
            raise ValueError("Server address must be in format host:port")
        if not port.isdigit() or int(port) > 65535:
            raise ValueError(f"Invalid port in server address: {port!r}")
        return v

    @property
    def host(self) -> str:
        return self.addr.rpartition(":")[0].strip("[]")

    @property
    def port(self) -> int:
        return int(self.addr.rpartition(":")[2])


class ShimConfig(BaseModel):
    """Main sops-sakura-kms configuration schema."""

    kms: KMSConfig = Field(default_factory=KMSConfig)

    server: ServerConfig = Field(default_factory=ServerConfig)

    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    command: str = Field(default=DEFAULT_COMMAND, min_length=1)

    server_only: bool = False

    model_config = ConfigDict(frozen=True)


def parse_bool(name: str, value: str) -> bool:
    """
    Parse a boolean environment value.

    Accepts the same spellings as Go's ``strconv.ParseBool``.

    Raises:
        ConfigurationError: If the value is not a recognised boolean
    """
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"invalid boolean value for {name}: {value!r}")


def first_env(environ: Mapping[str, str], names: Sequence[str]) -> Optional[str]:
    """Return the first non-empty value among ``names``."""
    for name in names:
        if value := environ.get(name):
            return value
    return None


class ConfigManager:
    """
    Manages sops-sakura-kms configuration loading and validation.

    Configuration precedence (highest to lowest):
    1. Environment variables (first non-empty alias wins)
    2. Defaults
    """

    def __init__(self):
        self._config: Optional[ShimConfig] = None

    def load(self, environ: Optional[Mapping[str, str]] = None) -> ShimConfig:
        """
        Load and validate configuration.

        Args:
            environ: Environment mapping, defaults to ``os.environ``

        Returns:
            Validated ShimConfig instance

        Raises:
            ConfigurationError: If configuration is invalid
        """
        if environ is None:
            environ = os.environ

        config_dict = self._load_from_env(environ)

        try:
            self._config = ShimConfig(**config_dict)
        except ValidationError as e:
            errors = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ConfigurationError(f"invalid configuration: {errors}") from e

        self._log_configuration()
        return self._config

    def _load_from_env(self, environ: Mapping[str, str]) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        config: Dict[str, Any] = {}

        # KMS configuration
        if key_id := first_env(environ, KEY_ID_ENV_VARS):
            config.setdefault("kms", {})["key_id"] = key_id
        if token := environ.get(ACCESS_TOKEN_ENV):
            config.setdefault("kms", {})["access_token"] = token
        if secret := environ.get(ACCESS_TOKEN_SECRET_ENV):
            config.setdefault("kms", {})["access_token_secret"] = secret
        if endpoint := environ.get("SAKURACLOUD_KMS_ENDPOINT"):
            config.setdefault("kms", {})["endpoint"] = endpoint.rstrip("/")

        # Server configuration
        if addr := environ.get("SSK_SERVER_ADDR"):
            config.setdefault("server", {})["addr"] = addr
        if shutdown_timeout := environ.get("SSK_SHUTDOWN_TIMEOUT"):
            config.setdefault("server", {})["shutdown_timeout"] = shutdown_timeout

        # Logging configuration
        if log_level := environ.get("SSK_LOG_LEVEL"):
            config.setdefault("logging", {})["level"] = log_level.upper()
        if log_format := environ.get("SSK_LOG_FORMAT"):
            config.setdefault("logging", {})["format"] = log_format.lower()

        # Wrapped command
        if command := environ.get("SSK_COMMAND"):
            config["command"] = command
        if server_only := environ.get("SSK_SERVER_ONLY"):
            config["server_only"] = parse_bool("SSK_SERVER_ONLY", server_only)

        return config

    def _log_configuration(self) -> None:
        """Log the loaded configuration (with credentials redacted)."""
        if not self._config:
            return

        config_dict = self._config.model_dump(mode="json")

        for field in ("access_token", "access_token_secret"):
            if config_dict["kms"].get(field):
                config_dict["kms"][field] = "***REDACTED***"

        logger.debug(f"Active configuration: {json.dumps(config_dict)}")

    def get_config(self) -> ShimConfig:
        """
        Get the loaded configuration.

        Raises:
            RuntimeError: If configuration hasn't been loaded
        """
        if self._config is None:
            raise RuntimeError("Configuration not loaded. Call load() first.")
        return self._config


def load_config(environ: Optional[Mapping[str, str]] = None) -> ShimConfig:
    """Load configuration once at process entry."""
    return ConfigManager().load(environ)
