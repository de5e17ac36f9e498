"""Configuration module for Family Screen Time.

This module loads the service configuration with pydantic-settings and performs
the config-file discovery that has to happen before anything else imports the
settings object.

Config file discovery:
----------------------
The config file is discovered in the following order:

1. the path in the `FAMILY_SCREEN_TIME_CONFIG_PATH` environment variable,
2. `.fst` in the project root,
3. `.env` in the project root,
4. no file at all, in which case only environment variables are used.

This lets the service run from plain environment variables in containers and
CI, and from a local dotfile during development.

Secrets:
--------
The guardian passcode is a secret. It is never hardcoded and a placeholder value
is rejected at startup. When it is left empty, every action that needs the
passcode challenge is refused.

How to extend/maintain:
-----------------------
- Add new config fields to the `Settings` class, with a short comment.
- If you change the discovery logic, update this docstring.
"""

import os
from pathlib import Path
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Constants ---
FST_FILENAME: str = ".fst"
DEFAULT_ENV_FILENAME: str = ".env"
CONFIG_ENV_VAR: str = "FAMILY_SCREEN_TIME_CONFIG_PATH"
PROJECT_ROOT: Path = Path(__file__).resolve().parents[2]


# --- Config file discovery (no logging) ---
def get_config_path() -> Optional[str]:
    """Determine the config file path to use, in order of precedence:
    1. Environment variable FAMILY_SCREEN_TIME_CONFIG_PATH
    2. .fst in project root
    3. .env in project root
    4. None (fallback to environment variables only)

    Returns:
        Optional[str]: Path to config file, or None if not found.
    """
    env_path: Optional[str] = os.environ.get(CONFIG_ENV_VAR)
    if env_path and os.path.exists(env_path):
        return env_path
    fst_path: Path = PROJECT_ROOT / FST_FILENAME
    if fst_path.exists():
        return str(fst_path)
    env_path_file: Path = PROJECT_ROOT / DEFAULT_ENV_FILENAME
    if env_path_file.exists():
        return str(env_path_file)
    return None


CONFIG_PATH: Optional[str] = get_config_path()
if CONFIG_PATH:
    load_dotenv(dotenv_path=CONFIG_PATH, override=True)


class Settings(BaseSettings):
    """Application settings with environment variable support.
    All fields are loaded from the environment or the .fst/.env file.
    """

    model_config = SettingsConfigDict(
        env_file=CONFIG_PATH if CONFIG_PATH else None,
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="allow",
    )

    # Server configuration
    HOST: str = "127.0.0.1"
    PORT: int = 8000
    DEBUG: bool = True
    APP_NAME: str = "Family_Screen_Time"
    ENV: str = "dev"

    # Storage backend: "mongo" for MongoDB + Redis, "memory" for a single process
    STORE_BACKEND: str = "mongo"

    # MongoDB configuration
    MONGODB_URL: str = "mongodb://127.0.0.1:27017"
    MONGODB_DATABASE: str = "family_screen_time"
    MONGODB_CONNECTION_TIMEOUT: int = 10000
    MONGODB_SERVER_SELECTION_TIMEOUT: int = 5000
    MONGODB_USERNAME: Optional[str] = None
    MONGODB_PASSWORD: Optional[SecretStr] = None

    # Redis configuration
    # REDIS_URL is the effective URL used by the app. It can be provided directly
    # or will be constructed from host/port/credentials below.
    REDIS_URL: Optional[str] = None
    REDIS_HOST: str = "127.0.0.1"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_USERNAME: Optional[str] = None
    REDIS_PASSWORD: Optional[SecretStr] = None
    REDIS_CONNECT_TIMEOUT: int = 5  # seconds
    REDIS_CHANNEL_PREFIX: str = "fst"

    # Accounting rules
    FAMILY_TIMEZONE: str = "UTC"  # Default IANA zone for families that do not set one
    DEFAULT_DAILY_LIMIT_MINUTES: int = 120  # Applied when a child has no limit configured
    MIN_SESSION_MINUTES: int = 1  # Lower sanity bound for recorded durations
    MAX_SESSION_MINUTES: int = 300  # Upper sanity bound for recorded durations
    DEFAULT_WARNING_THRESHOLDS: List[int] = [15, 5]  # Remaining-minute warning marks

    # Guardian passcode used for a child's privileged actions
    GUARDIAN_PASSCODE: SecretStr = SecretStr("")

    # Store and event log
    STORE_CAS_MAX_ATTEMPTS: int = 3  # Re-apply attempts on a version conflict
    EVENT_LOG_RETENTION_DAYS: int = 30  # TTL for the event log collection
    EVENT_LOG_PAGE_SIZE: int = 200  # Max events returned per catch-up call

    # Logging configuration
    LOG_LEVEL: str = "INFO"
    LOKI_ENABLED: bool = False
    LOKI_URL: str = "http://localhost:3100/loki/api/v1/push"
    LOKI_BUFFER_FILE: str = "logs/loki_buffer.log"
    LOKI_COMPRESS: bool = True

    # CORS configuration
    CORS_ENABLED: bool = True
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:8081"

    @field_validator("GUARDIAN_PASSCODE", mode="before")
    @classmethod
    def no_placeholder_passcode(cls, v, info):
        value = v.get_secret_value() if isinstance(v, SecretStr) else str(v or "")
        if value and ("change" in value.lower() or value.strip() in ("0000", "1234")):
            raise ValueError(f"{info.field_name} must be set via environment or .fst and not a placeholder!")
        return v

    @field_validator("STORE_BACKEND", mode="before")
    @classmethod
    def validate_store_backend(cls, v):
        value = str(v).strip().lower()
        if value not in ("mongo", "memory"):
            raise ValueError("STORE_BACKEND must be 'mongo' or 'memory'")
        return value

    @field_validator("FAMILY_TIMEZONE", mode="before")
    @classmethod
    def validate_timezone(cls, v):
        try:
            ZoneInfo(str(v))
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"FAMILY_TIMEZONE '{v}' is not a known IANA time zone") from exc
        return str(v)

    @field_validator(
        "DEFAULT_DAILY_LIMIT_MINUTES",
        "MIN_SESSION_MINUTES",
        "MAX_SESSION_MINUTES",
        "STORE_CAS_MAX_ATTEMPTS",
        "EVENT_LOG_PAGE_SIZE",
        mode="before",
    )
    @classmethod
    def validate_positive_integers(cls, v, info):
        """Validate that numeric accounting settings are positive."""
        value = int(v)
        if value <= 0:
            raise ValueError(f"{info.field_name} must be a positive integer")
        return value

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return not self.DEBUG

    @property
    def cors_origins_list(self) -> List[str]:
        """Get list of allowed CORS origins."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def passcode_configured(self) -> bool:
        return bool(self.GUARDIAN_PASSCODE.get_secret_value())


# Global settings instance
settings: Settings = Settings()

# Compute effective REDIS_URL if not explicitly provided.
if not settings.REDIS_URL:
    creds = ""
    if settings.REDIS_USERNAME or settings.REDIS_PASSWORD:
        username = settings.REDIS_USERNAME or ""
        password = settings.REDIS_PASSWORD.get_secret_value() if settings.REDIS_PASSWORD else ""
        if username and password:
            creds = f"{username}:{password}@"
        elif password and not username:
            creds = f":{password}@"

    settings.REDIS_URL = f"redis://{creds}{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"
