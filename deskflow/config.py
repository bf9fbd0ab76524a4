"""Configuration for the DeskFlow workflow engine.

Every ``AppConfig`` field can be set from a ``DESKFLOW_<FIELD>`` environment
variable (e.g. ``DESKFLOW_MAX_LOOP_ITERATIONS``), optionally loaded from a
``.env`` file.
"""

import os
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from .core.exceptions import ConfigurationError

ENV_PREFIX = "DESKFLOW_"

# comma-separated in the environment
LIST_FIELDS = {"cors_origins", "cors_methods"}
# "none" or an empty value in the environment disables these
NULLABLE_FIELDS = {"max_loop_iterations", "log_file"}

SUPPORTED_DATABASES = ("sqlite", "postgresql", "mysql")


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AppConfig(BaseModel):
    """Application configuration settings."""

    app_name: str = Field(default="DeskFlow Workflow Engine")
    app_version: str = Field(default="1.0.0")
    debug: bool = False

    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)
    reload: bool = False

    database_url: str = Field(default="sqlite:///./deskflow.db", description="SQLAlchemy database URL")
    database_echo: bool = Field(default=False, description="Log every SQL statement")

    max_concurrent_executions: int = Field(default=10, ge=1, description="Worker threads for traversals")
    http_timeout: float = Field(default=30.0, gt=0, description="Default timeout of http_request actions")
    max_loop_iterations: Optional[int] = Field(default=10000, ge=1, description="Loop safety cap; None disables")
    resume_pending_delays: bool = Field(default=True, description="Reschedule persisted delays at startup")

    log_level: LogLevel = LogLevel.INFO
    log_format: Optional[str] = None
    log_file: Optional[str] = None
    log_max_size: int = 10 * 1024 * 1024
    log_backup_count: int = 5
    structured_logging: bool = Field(default=False, description="Emit JSON log lines")

    slow_request_threshold: float = Field(default=5.0, description="Seconds before a request is logged as slow")
    cors_origins: list = Field(default_factory=lambda: ["*"])
    cors_methods: list = Field(default_factory=lambda: ["GET", "POST", "PUT", "DELETE"])

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, url):
        if not url:
            raise ValueError("Database URL cannot be empty")
        scheme = url.split('://')[0].lower().split('+')[0]
        if scheme not in SUPPORTED_DATABASES:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {list(SUPPORTED_DATABASES)}")
        return url

    @field_validator('log_level', mode='before')
    @classmethod
    def normalize_log_level(cls, level):
        return level.upper() if isinstance(level, str) else level

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.lower().startswith("sqlite")

    def get_uvicorn_config(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Build a configuration from ``DESKFLOW_*`` variables; unset ones keep their defaults."""
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.getenv(ENV_PREFIX + name.upper())
            if raw is None:
                continue
            if name in LIST_FIELDS:
                values[name] = [item.strip() for item in raw.split(",") if item.strip()]
            elif name in NULLABLE_FIELDS and raw.strip().lower() in ("", "none"):
                values[name] = None
            else:
                values[name] = raw
        return cls(**values)


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Process-wide configuration, read from the environment on first use."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load ``config_file`` (or ``./.env``) into the environment, then read the configuration."""
    global _config
    from dotenv import load_dotenv

    env_file = config_file if config_file and os.path.exists(config_file) else '.env'
    if os.path.exists(env_file):
        load_dotenv(env_file)

    _config = AppConfig.from_env()
    return _config


def set_config(config: AppConfig) -> AppConfig:
    global _config
    _config = config
    return _config


def reset_config():
    global _config
    _config = None


def _ensure_directory(path: Optional[str], label: str, errors: list) -> None:
    directory = os.path.dirname(path) if path else ""
    if directory and not os.path.exists(directory):
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as e:
            errors.append(f"Cannot create {label} directory {directory}: {e}")


def validate_config(config: AppConfig) -> None:
    """
    Check settings that depend on the environment or on each other.

    Raises:
        ConfigurationError: Listing every problem found
    """
    errors = []

    if config.is_sqlite and ":memory:" not in config.database_url:
        _ensure_directory(config.database_url.split(":///", 1)[-1], "database", errors)
    _ensure_directory(config.log_file, "log", errors)

    if config.max_concurrent_executions > 100:
        errors.append("High concurrent execution limit may exhaust the database connection pool")

    if config.max_loop_iterations is None:
        errors.append("Loop safety limit is disabled; unbounded loop nodes will never stop")

    if errors:
        raise ConfigurationError(
            f"Configuration validation failed: {'; '.join(errors)}",
            details={"errors": errors}
        )


def get_development_config() -> AppConfig:
    return AppConfig(debug=True, reload=True, log_level=LogLevel.DEBUG, database_echo=True)


def get_production_config() -> AppConfig:
    return AppConfig(structured_logging=True, cors_origins=[])


def get_testing_config() -> AppConfig:
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        max_concurrent_executions=2,
        http_timeout=5.0,
        max_loop_iterations=1000,
        resume_pending_delays=False
    )
