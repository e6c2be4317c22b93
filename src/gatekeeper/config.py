"""
Centralized configuration management for Gatekeeper.

Provides type-safe configuration handling using Pydantic BaseSettings with
validation and environment variable support. The security subsystem keeps
its own dataclass configuration, aggregated here.
"""

import json
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .security.config import SecurityConfig
from .util.log import get_logger

logger = get_logger(__name__)


class ServerConfig(BaseSettings):
    """HTTP server configuration."""

    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=8000, description="Bind port")
    workers: int = Field(default=1, description="Uvicorn worker processes")

    # Reverse proxy settings
    behind_proxy: bool = Field(default=False, description="Trust X-Forwarded-For")
    root_path: str = Field(default="", description="ASGI root path when mounted under a prefix")

    @field_validator("port")
    @classmethod
    def validate_port(cls, v):
        """Validate port is in range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("workers")
    @classmethod
    def validate_workers(cls, v):
        """Validate worker count is reasonable."""
        if v <= 0:
            raise ValueError("workers must be positive")
        if v > 32:
            raise ValueError("workers should not exceed 32")
        return v

    model_config = SettingsConfigDict(env_prefix="GATEKEEPER_SERVER_")


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    model_config = SettingsConfigDict(env_prefix="GATEKEEPER_")


class MonitoringConfig(BaseSettings):
    """Monitoring and administrative endpoint configuration."""

    enable_maintenance: bool = Field(default=True, description="Run the periodic sweep task")
    stats_top_n: int = Field(default=10, description="Attackers listed by the stats endpoint")
    enable_stats_endpoint: bool = Field(default=True)

    @field_validator("stats_top_n")
    @classmethod
    def validate_top_n(cls, v):
        if v <= 0:
            raise ValueError("stats_top_n must be positive")
        return v

    model_config = SettingsConfigDict(env_prefix="GATEKEEPER_MONITORING_")


class GatekeeperConfig(BaseSettings):
    """Main configuration aggregating all subsystems."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    security: SecurityConfig | None = Field(default=None)

    def __init__(self, **kwargs):
        """Initialize configuration with security config integration."""
        super().__init__(**kwargs)

        if self.security is None:
            self.security = SecurityConfig.from_environment()
            if self.server.behind_proxy:
                self.security.trust_proxy = True

    @classmethod
    def load_from_env(cls) -> "GatekeeperConfig":
        """Load configuration from environment variables."""
        config = cls()

        errors = config.validate()
        if errors:
            logger.warning("Configuration validation warnings", extra={"errors": errors})

        logger.info("Configuration loaded successfully from environment")
        return config

    @classmethod
    def load_from_file(cls, config_file: Path) -> "GatekeeperConfig":
        """Load configuration from a JSON file.

        Sections ``server``, ``logging`` and ``monitoring`` override the
        environment; a ``security`` section is loaded with
        ``SecurityConfig.from_file`` semantics.

        Args:
            config_file: Path to configuration file

        Returns:
            Loaded configuration
        """
        with open(config_file) as f:
            config_data = json.load(f)

        security_data = config_data.pop("security", None)
        security = None
        if security_data is not None:
            security = SecurityConfig()
            for key, value in security_data.items():
                if hasattr(security, key):
                    setattr(security, key, Path(value) if key == "audit_log_file" and value else value)

        sections = {
            name: section_cls(**config_data.get(name, {}))
            for name, section_cls in (
                ("server", ServerConfig),
                ("logging", LoggingConfig),
                ("monitoring", MonitoringConfig),
            )
        }

        config = cls(security=security, **sections)
        logger.info("Configuration loaded from file", extra={"config_file": str(config_file)})
        return config

    def validate(self) -> list[str]:
        """Validate the complete configuration.

        Returns:
            List of validation warnings/errors
        """
        warnings = []

        if self.security:
            warnings.extend(f"Security: {err}" for err in self.security.validate())

            if self.monitoring.enable_stats_endpoint and not self.security.admin_api_keys:
                warnings.append("Stats endpoint enabled but no admin API keys configured")

            if self.server.behind_proxy and not self.security.trust_proxy:
                warnings.append("Server runs behind a proxy but security.trust_proxy is disabled")

        return warnings

    def to_dict(self) -> dict[str, Any]:
        """Export configuration to a JSON-serializable dictionary."""
        config_dict: dict[str, Any] = {
            "server": self.server.model_dump(),
            "logging": self.logging.model_dump(),
            "monitoring": self.monitoring.model_dump(),
        }
        if self.security:
            config_dict["security"] = {
                key: str(value) if isinstance(value, Path) else value
                for key, value in self.security.__dict__.items()
            }
        return config_dict

    def save_to_file(self, config_file: Path) -> None:
        config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(config_file, "w") as f:
            json.dump(self.to_dict(), f, indent=2, sort_keys=True)
        logger.info("Configuration saved to file", extra={"config_file": str(config_file)})

    model_config = SettingsConfigDict(
        env_prefix="GATEKEEPER_",
        arbitrary_types_allowed=True,
        case_sensitive=False,
    )


# Global configuration instance
_global_config: GatekeeperConfig | None = None


def get_config() -> GatekeeperConfig:
    """Get the global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = GatekeeperConfig.load_from_env()
    return _global_config


def set_config(config: GatekeeperConfig) -> None:
    """Set the global configuration instance."""
    global _global_config
    _global_config = config
    logger.info("Global configuration updated")


def reload_config() -> GatekeeperConfig:
    """Reload configuration from environment."""
    global _global_config
    _global_config = GatekeeperConfig.load_from_env()
    return _global_config


def get_security_config() -> SecurityConfig:
    """Get security configuration."""
    config = get_config()
    if config.security is None:
        raise RuntimeError("Security configuration not initialized")
    return config.security
