"""
Configuration settings for the UpSkillPro admin control plane.

Uses Pydantic settings management for environment variables and configuration.
"""

from functools import lru_cache
from typing import Optional, List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import AnyHttpUrl, Field, field_validator


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """

    # API Settings
    API_PREFIX: str = "/api"
    PROJECT_NAME: str = "UpSkillPro Admin Control Plane"
    VERSION: str = "1.0.0"
    DESCRIPTION: str = "Administrative control plane for the UpSkillPro e-learning platform"

    # Security
    JWT_SECRET: str = Field(min_length=16)
    JWT_ALGORITHM: str = "HS256"
    TOKEN_TTL: int = Field(default=60 * 60 * 24, gt=0)  # seconds
    SESSION_IDLE: int = Field(default=60 * 60 * 2, gt=0)  # seconds
    DECISION_CACHE_TTL: float = Field(default=30.0, ge=0, le=30)

    # Store
    TABLE_NAME: str = "upskill-admin"
    REGION: str = "us-east-1"
    BUCKET: Optional[str] = None
    DYNAMODB_ENDPOINT_URL: Optional[str] = None
    CREATE_TABLE: bool = False
    USE_TRANSACTIONS: bool = True
    AUDIT_RETENTION_DAYS: int = Field(default=365, gt=0)

    # Server
    PORT: int = Field(default=8000, gt=0, lt=65536)
    HOST: str = "0.0.0.0"
    REQUEST_TIMEOUT: float = 15.0
    EXPORT_TIMEOUT: float = 60.0

    # CORS
    BACKEND_CORS_ORIGINS: List[AnyHttpUrl] = []

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: str | List[str]) -> List[str] | str:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    # Realtime
    REALTIME_MAX_BUFFER: int = Field(default=1024, gt=0)
    REALTIME_HEARTBEAT: float = 60.0
    REALTIME_SWEEP_INTERVAL: float = 5.0
    METRICS_INTERVAL: float = 30.0
    ENABLE_BACKGROUND_TASKS: bool = True

    # Shared policy snapshot
    SETTINGS_REFRESH: float = 60.0

    # Security monitor
    MONITOR_WINDOW: int = 15 * 60  # seconds

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @property
    def backups_enabled(self) -> bool:
        """Check if an object store bucket is configured for backups."""
        return bool(self.BUCKET)


@lru_cache
def get_settings() -> Settings:
    """
    Load settings once per process.

    Raises pydantic's ValidationError when required values are missing.
    """
    return Settings()
