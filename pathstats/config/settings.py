"""
Settings for the path stats engine.

Every section is a pydantic-settings model reading its own environment
prefix, so a deployment can tune one subsystem without touching the rest.
"""

from functools import lru_cache
from typing import Optional
from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Event and aggregate store (PostgreSQL)"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="pathstats", description="Database name")
    user: str = Field(default="pathstats", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    echo: bool = Field(default=False, description="Log every SQL statement")
    url: Optional[str] = Field(
        default=None,
        alias="DATABASE_URL",
        description="Full SQLAlchemy URL; wins over the POSTGRES_* parts (e.g. sqlite+aiosqlite:///stats.db)",
    )

    @property
    def async_url(self) -> str:
        if self.url:
            return self.url
        credentials = f"{self.user}:{self.password.get_secret_value()}"
        return f"postgresql+asyncpg://{credentials}@{self.host}:{self.port}/{self.db}"


class GeolocationSettings(BaseSettings):
    """IP Geolocation Lookup Configuration"""

    model_config = SettingsConfigDict(env_prefix="GEO_")

    api_url: str = Field(default="https://geolocation-db.com/json", description="Geolocation API base URL")
    timeout_seconds: float = Field(default=5.0, description="Lookup timeout in seconds")
    enabled: bool = Field(default=True, description="Resolve unseen IP addresses")


class AttributionSettings(BaseSettings):
    """Session Chain Attribution Configuration"""

    model_config = SettingsConfigDict(env_prefix="ATTRIBUTION_")

    session_window_hours: float = Field(
        default=8.0,
        description="How long after its last edge a chain may still be continued",
    )


class StatsSettings(BaseSettings):
    """Daily Aggregation Configuration"""

    model_config = SettingsConfigDict(env_prefix="STATS_")

    backfill_days: int = Field(default=30, description="Default number of days for backfill runs")
    entry_window_hours: float = Field(
        default=8.0,
        description="An edge whose parent is older than this counts as an entry",
    )


class MonitoringSettings(BaseSettings):
    """Log level and rendering"""

    model_config = SettingsConfigDict(env_prefix="")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Root log level")
    log_format: str = Field(default="json", alias="LOG_FORMAT", description="json for collectors, text for a terminal")


class Settings(BaseSettings):
    """
    Root settings object.

    Each subsystem section reads its own prefixed variables; this class
    adds the deployment environment and the ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_env: str = Field(default="development", alias="APP_ENV", description="Deployment environment")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    geolocation: GeolocationSettings = Field(default_factory=GeolocationSettings)
    attribution: AttributionSettings = Field(default_factory=AttributionSettings)
    stats: StatsSettings = Field(default_factory=StatsSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        environments = ("development", "testing", "staging", "production")
        if v.lower() not in environments:
            raise ValueError(f"APP_ENV must be one of {', '.join(environments)}, got {v!r}")
        return v.lower()


@lru_cache()
def get_settings() -> Settings:
    """Settings loaded once per process"""
    return Settings()
