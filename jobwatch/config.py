"""Configuration management using Pydantic Settings and YAML profiles.

Process-level settings come from the environment (``JOBWATCH_*``) and an
optional ``.env`` file. Connection profiles and monitor timings come from a
YAML file located with :func:`find_config_path`.
"""

import os
import re
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional, Union
from urllib.parse import quote

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from jobwatch.errors import ConfigError

DEFAULT_PORT = 5432
DEFAULT_SSLMODE = "prefer"
DEFAULT_QUEUE = "default"

DEFAULT_POLL_INTERVAL = timedelta(seconds=5)
DEFAULT_ORPHAN_THRESHOLD = timedelta(minutes=30)
MIN_POLL_INTERVAL = timedelta(seconds=1)
MIN_ORPHAN_THRESHOLD = timedelta(minutes=1)

CONFIG_ENV_VAR = "JOBWATCH_CONFIG"
USER_CONFIG_PATH = Path("~/.config/jobwatch/config.yaml")
LOCAL_CONFIG_PATH = Path("config.yaml")

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}


class Settings(BaseSettings):
    """Process settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="JOBWATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    config_path: Optional[str] = Field(
        default=None, description="Path to the YAML config file"
    )
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(
        default=False, description="Render logs as JSON instead of console output"
    )

    # Database Connection Pool
    db_pool_max_size: int = Field(default=5, description="Maximum connection pool size")
    db_connect_timeout: float = Field(
        default=10.0, description="Connection timeout in seconds"
    )
    db_command_timeout: float = Field(default=30.0, description="Query timeout in seconds")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def parse_duration(value: Union[str, int, float, timedelta]) -> timedelta:
    """Parse a duration such as ``"5s"``, ``"30m"``, ``"1h30m"`` or seconds.

    Raises:
        ValueError: If the string is not a valid duration.
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)

    text = value.strip().replace(" ", "")
    if not text:
        raise ValueError("empty duration")
    if re.fullmatch(r"\d+(?:\.\d+)?", text):
        return timedelta(seconds=float(text))

    total = timedelta()
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


class ConnectionProfile(BaseModel):
    """A named database connection. Each profile has its own default queue."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = Field(..., min_length=1)
    host: str = Field(..., min_length=1)
    port: int = Field(default=DEFAULT_PORT)
    database: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    password: str = Field(default="")
    sslmode: str = Field(default=DEFAULT_SSLMODE)
    default_queue: str = Field(default=DEFAULT_QUEUE)

    @field_validator("port", mode="before")
    @classmethod
    def default_port(cls, v):
        return DEFAULT_PORT if v in (None, 0, "") else v

    @field_validator("sslmode", mode="before")
    @classmethod
    def default_sslmode(cls, v):
        return DEFAULT_SSLMODE if not v else v

    @field_validator("default_queue", mode="before")
    @classmethod
    def default_queue_name(cls, v):
        return DEFAULT_QUEUE if not v else v

    @property
    def dsn(self) -> str:
        """PostgreSQL connection string for this profile."""
        user = quote(self.username, safe="")
        password = quote(self.password, safe="")
        return (
            f"postgresql://{user}:{password}@{self.host}:{self.port}/"
            f"{quote(self.database, safe='')}?sslmode={self.sslmode}"
        )


class MonitorConfig(BaseModel):
    """Monitor configuration loaded from YAML."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    poll_interval: timedelta = Field(default=DEFAULT_POLL_INTERVAL)
    orphan_threshold: timedelta = Field(default=DEFAULT_ORPHAN_THRESHOLD)
    connections: list[ConnectionProfile] = Field(..., min_length=1)

    @field_validator("poll_interval", mode="before")
    @classmethod
    def validate_poll_interval(cls, v):
        if v is None:
            return DEFAULT_POLL_INTERVAL
        return max(parse_duration(v), MIN_POLL_INTERVAL)

    @field_validator("orphan_threshold", mode="before")
    @classmethod
    def validate_orphan_threshold(cls, v):
        if v is None:
            return DEFAULT_ORPHAN_THRESHOLD
        return max(parse_duration(v), MIN_ORPHAN_THRESHOLD)

    @field_validator("connections")
    @classmethod
    def validate_unique_names(cls, v: list[ConnectionProfile]):
        seen: set[str] = set()
        for conn in v:
            if conn.name in seen:
                raise ValueError(f"duplicate connection name: {conn.name}")
            seen.add(conn.name)
        return v

    @property
    def connection_names(self) -> list[str]:
        return [c.name for c in self.connections]

    def get_connection(self, name: str) -> ConnectionProfile:
        """Find a connection by name.

        Raises:
            ConfigError: If no connection has that name.
        """
        for conn in self.connections:
            if conn.name == name:
                return conn
        raise ConfigError(f"connection {name!r} not found")


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "config"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


def parse_config(data: Any) -> MonitorConfig:
    """Validate already-parsed YAML data into a MonitorConfig."""
    if not isinstance(data, dict):
        raise ConfigError("config: expected a mapping at the top level")
    if not data.get("connections"):
        raise ConfigError("config: at least one connection is required")
    try:
        return MonitorConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"config: {_format_validation_error(e)}") from e


def load_config(path: Union[str, Path]) -> MonitorConfig:
    """Read and validate a YAML config file."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"reading config file: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"parsing config file: {e}") from e
    return parse_config(data)


def find_config_path(explicit: Optional[str] = None) -> Path:
    """Return the first config file found in the search order.

    1. Explicit path (if given; must exist)
    2. ``$JOBWATCH_CONFIG``
    3. ``~/.config/jobwatch/config.yaml``
    4. ``./config.yaml``
    """
    if explicit:
        path = Path(explicit)
        if not path.is_file():
            raise ConfigError(f"config file not found: {explicit}")
        return path

    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path and Path(env_path).is_file():
        return Path(env_path)

    user_path = USER_CONFIG_PATH.expanduser()
    if user_path.is_file():
        return user_path

    if LOCAL_CONFIG_PATH.is_file():
        return LOCAL_CONFIG_PATH

    raise ConfigError(
        f"no config file found; create one at {USER_CONFIG_PATH} or use --config"
    )
