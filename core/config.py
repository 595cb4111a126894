from typing import Literal, Optional
from pydantic_settings import BaseSettings
from pydantic import ConfigDict, field_validator, model_validator


class Settings(BaseSettings):
    model_config = ConfigDict(env_file=".env")

    ENV: str = "development"

    DATABASE_URL: str
    SECRET_KEY: str
    PUBLIC_KEY: Optional[str] = None
    ALGORITHM: str
    ACCESS_TOKEN_EXPIRE_MINUTES: int
    REFRESH_TOKEN_EXPIRE_DAYS: int
    # Required, no default
    REFRESH_LEEWAY_SECONDS: float

    TOKEN_STORE_BACKEND: Literal["database", "memory"] = "database"
    LOCK_BACKEND: Literal["local", "redis"] = "local"
    REDIS_URL: str = "redis://localhost:6379/0"
    LOCK_TTL_MS: int = 5000
    LOCK_ACQUIRE_TIMEOUT_SECONDS: float = 2.0
    LOCK_RETRY_BASE_MS: int = 20
    LOCK_RETRY_MAX_MS: int = 250
    SESSION_SWEEP_INTERVAL_SECONDS: int = 300

    INTERNAL_API_KEY: str

    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"
    CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    @field_validator("ACCESS_TOKEN_EXPIRE_MINUTES", "REFRESH_TOKEN_EXPIRE_DAYS", "LOCK_TTL_MS")
    @classmethod
    def validate_positive(cls, value):
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("REFRESH_LEEWAY_SECONDS", "LOCK_ACQUIRE_TIMEOUT_SECONDS")
    @classmethod
    def validate_non_negative(cls, value):
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @model_validator(mode="after")
    def validate_lock_timing(self):
        """Lease must outlive the longest backoff step."""
        if self.LOCK_RETRY_BASE_MS <= 0 or self.LOCK_RETRY_MAX_MS < self.LOCK_RETRY_BASE_MS:
            raise ValueError("LOCK_RETRY_MAX_MS must be >= LOCK_RETRY_BASE_MS > 0")
        if self.LOCK_TTL_MS <= self.LOCK_RETRY_MAX_MS:
            raise ValueError("LOCK_TTL_MS must be larger than LOCK_RETRY_MAX_MS")
        return self


settings = Settings()
