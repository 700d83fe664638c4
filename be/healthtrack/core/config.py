"""
HealthTrack Configuration

Application settings with environment variable support.
"""

from functools import lru_cache
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="HEALTHTRACK_",
        extra="ignore",
    )

    # App
    app_name: str = "HealthTrack"
    debug: bool = True

    # Storage ("memory" or "redis")
    storage_backend: str = "memory"
    redis_url: str = "redis://localhost:6379"
    redis_password: Optional[str] = None

    # API access tokens
    jwt_secret: str = "healthtrack-dev-secret-change-in-production"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24  # 24 hours

    # Identity provider ("memory" or "firebase")
    identity_provider: str = "memory"
    firebase_api_key: Optional[str] = None
    identity_toolkit_url: str = "https://identitytoolkit.googleapis.com"
    identity_provider_timeout_seconds: float = 10.0

    # Remote data restore (disabled when unset)
    restore_url: Optional[str] = None
    restore_timeout_seconds: float = 10.0

    # CORS
    cors_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:3000",
    ]

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def uses_redis(self) -> bool:
        return self.storage_backend == "redis"

    @property
    def has_firebase_key(self) -> bool:
        return self.firebase_api_key is not None and len(self.firebase_api_key) > 0


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
