"""
Configuration management for mcp-toolkit.

Provides hierarchical configuration loading with validation using Pydantic.
TOML files are merged in order. Environment variables prefixed with
``MCP_TOOLKIT_`` override the files (nested sections use ``__``), and keyword
overrides passed to :meth:`ConfigManager.load_config` override both.
"""

import os
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import toml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource

from mcp_toolkit.core.exceptions import ConfigError
from mcp_toolkit.utils.logging import get_logger

logger = get_logger(__name__)

# Merged TOML data for the ToolkitConfig being built by ConfigManager
_file_settings: ContextVar[Dict[str, Any]] = ContextVar("mcp_toolkit_file_settings", default={})


class TomlFileSettingsSource(PydanticBaseSettingsSource):
    """Settings read from the TOML files, ranked below environment variables."""

    def get_field_value(self, field: Any, field_name: str) -> Tuple[Any, str, bool]:
        return _file_settings.get().get(field_name), field_name, False

    def __call__(self) -> Dict[str, Any]:
        return dict(_file_settings.get())


class LoggingConfig(BaseModel):
    """Logging configuration."""

    enabled: bool = Field(default=True, description="Enable logging completely")
    level: str = Field(default="INFO", description="File logging level")
    console_level: str = Field(default="WARNING", description="Stderr logging level")
    format_type: str = Field(default="text", description="Log format (text/json)")
    file: Optional[str] = Field(default=None, description="Log file path")
    enable_rich: bool = Field(default=True, description="Enable Rich stderr output")
    max_bytes: int = Field(default=10 * 1024 * 1024, description="Max log file size")
    backup_count: int = Field(default=5, description="Number of backup files")
    suppress_http: bool = Field(default=True, description="Suppress HTTP library logging")

    @field_validator("level", "console_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate logging level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator("format_type")
    @classmethod
    def validate_format_type(cls, v: str) -> str:
        if v not in ["text", "json"]:
            raise ValueError(f"Invalid format type: {v}")
        return v


class KeyringConfig(BaseModel):
    """OS keyring location of the master encryption key."""

    service: str = Field(default="mcp-toolkit", description="Keyring service name")
    account: str = Field(default="master-encryption-key", description="Keyring account name")


class GatewayConfig(BaseModel):
    """Protocol gateway behaviour."""

    server_name: str = Field(default="mcp-toolkit", description="serverInfo.name reported to clients")
    default_protocol_version: str = Field(
        default="2024-11-05",
        description="Protocol version echoed when the client does not request one",
    )
    client_protocol_version: str = Field(
        default="2025-06-18",
        description="Protocol version sent to backends during the handshake",
    )
    client_name: str = Field(default="mcp-toolkit", description="clientInfo.name sent to backends")
    header_prefix: str = Field(default="header_", description="Env key prefix mapped to HTTP headers")
    max_noise_lines: int = Field(
        default=10,
        description="Consecutive non-JSON stdout lines tolerated from a backend",
    )
    stream_limit_bytes: int = Field(
        default=16 * 1024 * 1024,
        description="Maximum length of one line read from a backend",
    )
    call_timeout_seconds: Optional[float] = Field(
        default=None,
        description="Deadline for one backend request; None waits indefinitely",
    )
    http_timeout_seconds: float = Field(default=60.0, description="Total timeout for HTTP backend calls")
    aggregate_parallel: bool = Field(default=True, description="Query backends concurrently for tools/list")
    max_concurrent: int = Field(default=5, description="Concurrent backends during aggregation")
    docker_command: str = Field(default="docker", description="Container runtime executable")

    @field_validator("max_noise_lines", "stream_limit_bytes", "max_concurrent")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator("call_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("call_timeout_seconds must be positive")
        return v


class HttpServerConfig(BaseModel):
    """HTTP endpoint configuration."""

    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=3000, description="Bind port")
    default_scope: str = Field(default="default", description="Scope used by POST /mcp")

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError(f"Invalid port: {v}")
        return v


class ToolkitConfig(BaseSettings):
    """Main configuration class."""

    environment: str = Field(default="production", description="production, development or test")
    test_mode: bool = Field(default=False, description="Use the fixed test encryption key")
    debug: bool = Field(default=False, description="Enable debug mode")
    data_dir: str = Field(default="~/.config/mcp-toolkit", description="Data directory")

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    keyring: KeyringConfig = Field(default_factory=KeyringConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    http: HttpServerConfig = Field(default_factory=HttpServerConfig)

    model_config = {
        "env_prefix": "MCP_TOOLKIT_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_secret_settings,
            TomlFileSettingsSource(settings_cls),
        )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        if v.lower() not in ["production", "development", "test"]:
            raise ValueError(f"Invalid environment: {v}")
        return v.lower()

    @model_validator(mode="after")
    def validate_test_mode(self) -> "ToolkitConfig":
        if self.test_mode and self.environment == "production":
            raise ValueError("test_mode cannot be enabled in the production environment")
        return self

    @property
    def test_key_allowed(self) -> bool:
        """Whether the fixed test key may replace the keyring key."""
        return self.test_mode and self.environment != "production"

    def get_data_dir(self) -> Path:
        return Path(os.path.expanduser(self.data_dir))

    def get_log_file(self) -> Optional[Path]:
        if self.logging.file:
            log_path = Path(os.path.expanduser(self.logging.file))
            if not log_path.is_absolute():
                log_path = self.get_data_dir() / log_path
            return log_path
        return None

    @property
    def database_path(self) -> Path:
        """Get database path."""
        db_path = os.getenv("MCP_TOOLKIT_DB_PATH")
        if db_path:
            return Path(os.path.expanduser(db_path))
        return self.get_data_dir() / "mcp_toolkit.db"


class ConfigManager:
    """Configuration manager with hierarchical loading."""

    def __init__(self):
        self._config: Optional[ToolkitConfig] = None

    def load_config(
        self,
        config_files: Optional[List[Union[str, Path]]] = None,
        **overrides: Any,
    ) -> ToolkitConfig:
        """
        Load configuration from multiple sources.

        Args:
            config_files: Configuration files to load, later files win
            **overrides: Configuration overrides

        Returns:
            Loaded configuration

        Raises:
            ConfigError: If the merged configuration does not validate
        """
        if self._config is not None:
            return self._config

        if config_files is None:
            config_files = [
                "/etc/mcp-toolkit/config.toml",
                "~/.config/mcp-toolkit/config.toml",
                "./.mcp-toolkit.toml",
            ]

        config_data: dict = {}

        for config_file in config_files:
            file_path = Path(os.path.expanduser(str(config_file)))
            if file_path.exists():
                try:
                    file_data = toml.load(file_path)
                except (OSError, toml.TomlDecodeError) as e:
                    logger.warning(f"Failed to load config from {file_path}: {e}")
                    continue
                _deep_update(config_data, file_data)
                logger.debug(f"Loaded configuration from {file_path}")

        token = _file_settings.set(config_data)
        try:
            self._config = ToolkitConfig(**overrides)
        except ValidationError as e:
            raise ConfigError(
                f"Invalid configuration: {e}",
                error_code="INVALID_CONFIG",
            ) from e
        finally:
            _file_settings.reset(token)

        return self._config

    def get_config(self) -> ToolkitConfig:
        """Get current configuration."""
        if self._config is None:
            return self.load_config()
        return self._config

    def reload_config(self, **overrides: Any) -> ToolkitConfig:
        """Reload configuration."""
        self._config = None
        return self.load_config(**overrides)


def _deep_update(target: dict, source: dict) -> None:
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_update(target[key], value)
        else:
            target[key] = value


_config_manager = ConfigManager()

load_config = _config_manager.load_config
get_config = _config_manager.get_config
reload_config = _config_manager.reload_config
