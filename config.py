# config.py
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # database
    database_url: str = "sqlite:///./railway.db"
    db_pool_min: int = 1
    db_pool_max: int = 10
    db_timeout_seconds: int = 10

    # auth
    jwt_secret: str = "change-me-railway-secret"
    jwt_algorithm: str = "HS256"
    jwt_expires_hours: int = 24

    # booking behaviour
    id_max_attempts: int = 5
    restore_seats_on_cancel: bool = False

    # app
    environment: str = "development"
    log_level: str = "INFO"
    cors_origins: List[str] = ["*"]

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache
def get_settings() -> Settings:
    return Settings()
