import logging
import re
from pathlib import Path
from typing import Union

from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from errors import ConfigError

# Set up logging
logger = logging.getLogger(__name__)

_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Parse an interval such as "30s", "3m", "1h", "1d" or plain seconds.

    Raises:
        ValueError: if the value is not a non-negative duration.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must not be negative: {value}")
        return float(value)

    match = _DURATION_PATTERN.match(str(value))
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _DURATION_UNITS[unit.lower()]


class EngineSettings(BaseSettings):
    """Engine settings from environment (for container config)."""
    cache_dir: str = "/app/cache"
    data_dir: str = "/app/data"
    # SQLAlchemy URL; empty means SQLite under data_dir
    docstore_uri: str = ""
    docstore_db: str = "iptv_catalog"
    tmdb_token: str = ""
    tmdb_base_url: str = "https://api.themoviedb.org/3"
    tmdb_rate_concurrent: int = 45
    tmdb_rate_duration: float = 1.0
    # Intervals in seconds (strings like "1h" are accepted)
    sync_interval: float = 3600
    merge_interval: float = 180
    merge_first_delay: float = 30
    cache_purge_interval: float = 900
    shutdown_grace: float = 30
    # 0 = one slot per provider
    sync_concurrency: int = 0
    http_timeout_ms: int = 10000
    http_retries: int = 3
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator(
        "sync_interval", "merge_interval", "merge_first_delay",
        "cache_purge_interval", "shutdown_grace", mode="before",
    )
    @classmethod
    def _parse_interval(cls, value):
        return parse_duration(value)

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in VALID_LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(VALID_LOG_LEVELS)}")
        return level

    @field_validator("http_retries", "tmdb_rate_concurrent")
    @classmethod
    def _check_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("http_timeout_ms")
    @classmethod
    def _check_timeout(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be greater than 0")
        return value

    @property
    def http_timeout_seconds(self) -> float:
        return self.http_timeout_ms / 1000.0

    def database_url(self) -> str:
        """Get the document store URL."""
        if self.docstore_uri:
            return self.docstore_uri
        return f"sqlite:///{Path(self.data_dir) / self.docstore_db}.db"

    def validate_for_engine(self) -> None:
        """Check settings that are only required when the scheduler runs."""
        if not self.tmdb_token:
            raise ConfigError("TMDB_TOKEN is required")


def load_settings(**overrides) -> EngineSettings:
    """
    Load settings from environment, raising ConfigError on invalid values.
    """
    try:
        settings = EngineSettings(**overrides)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']).upper()}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from e

    return settings


def ensure_directories(settings: EngineSettings) -> None:
    """Ensure cache and data directories exist."""
    for directory in (settings.cache_dir, settings.data_dir):
        try:
            Path(directory).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"Cannot create directory {directory}: {e}") from e
    logger.info(f"Cache directory: {settings.cache_dir}, data directory: {settings.data_dir}")


def set_log_level(level: str) -> None:
    """Set the logging level for all loggers dynamically."""
    level_upper = level.upper()

    if level_upper not in VALID_LOG_LEVELS:
        logger.warning(f"Invalid log level '{level}', using INFO")
        level_upper = "INFO"

    numeric_level = getattr(logging, level_upper)

    logging.getLogger().setLevel(numeric_level)

    for logger_name in logging.root.manager.loggerDict:
        logger_obj = logging.getLogger(logger_name)
        logger_obj.setLevel(numeric_level)

    logger.info(f"Log level set to {level_upper}")
