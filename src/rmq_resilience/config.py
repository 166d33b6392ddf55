"""Configuration module using Pydantic Settings v2.

Provides validated configuration from environment variables with support for
.env files in local development. Diagnostic toggles that used to be read from
the process environment ad hoc live here as explicit fields and are handed to
components at construction time.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration with validation.

    All settings are loaded from environment variables with optional .env file
    support. Sensitive values use SecretStr to prevent accidental logging.
    Host and port are optional here so that their absence is reported as a
    ConfigurationError by the helper instead of a settings validation error.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # RabbitMQ Connection
    rabbitmq_host: str | None = Field(
        default=None,
        description="Broker host name (required)",
    )
    rabbitmq_port: int | None = Field(
        default=None,
        ge=1,
        le=65535,
        description="Broker port (required)",
    )
    rabbitmq_user: str | None = Field(default=None, description="Broker login")
    rabbitmq_password: SecretStr | None = Field(default=None, description="Broker password")
    rabbitmq_vhost: str = Field(default="/", description="Virtual host")
    network_recovery_interval: float = Field(
        default=10.0,
        ge=0.1,
        le=300.0,
        description="Seconds between automatic reconnection attempts",
    )
    connection_timeout: float = Field(
        default=30.0,
        ge=1.0,
        le=300.0,
        description="Timeout in seconds for establishing the connection",
    )

    # Initial connect retry
    connect_attempts: int = Field(
        default=5,
        ge=1,
        le=120,
        description="Maximum connection attempts on startup",
    )
    connect_base_delay: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description="Base delay in seconds for exponential connect backoff",
    )

    # Publisher
    publish_failure_backoff: float = Field(
        default=5.0,
        ge=0.0,
        le=300.0,
        description="Pause in seconds after a failed publish before returning",
    )

    # Error reporting toggles
    show_custom_errors_additional: bool = Field(
        default=False,
        description="Log traceback and cause for coded (expected) errors",
    )
    show_unhandled_errors: bool = Field(
        default=False,
        description="Log traceback and cause for unclassified errors",
    )
    throw_unhandled_exceptions: bool = Field(
        default=False,
        description="Re-raise unclassified errors after filling the result",
    )

    # Logging Configuration
    log_level: Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text", "logfmt"] = Field(
        default="logfmt",
        description="Log output format (logfmt for Grafana/Loki, json, or text for development)",
    )
    log_file: str | None = Field(
        default=None,
        description="Path to log file. If None, logs only to stdout.",
    )
    log_rotation: str = Field(
        default="500 MB",
        description="Log rotation condition (size, time, etc.)",
    )
    log_retention: str = Field(
        default="10 days",
        description="Log retention duration",
    )

    @property
    def rabbitmq_url_masked(self) -> str:
        """Return the connection target with the password masked for logging."""
        auth = ""
        if self.rabbitmq_user:
            auth = f"{self.rabbitmq_user}:****@" if self.rabbitmq_password else f"{self.rabbitmq_user}@"
        vhost = self.rabbitmq_vhost if self.rabbitmq_vhost.startswith("/") else f"/{self.rabbitmq_vhost}"
        return f"amqp://{auth}{self.rabbitmq_host}:{self.rabbitmq_port}{vhost}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
