from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Library settings loaded from READINGROOM_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="READINGROOM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage engine selection
    backend: Literal["sql", "kv", "memory"] = Field(
        default="sql", description="Storage engine: sql, kv or memory"
    )
    database_path: Path = Field(
        default=Path.home() / ".readingroom" / "library.db",
        description="SQLite file used by the relational engine",
    )

    # Redis (key-value engine)
    redis_url: Optional[str] = Field(default=None, description="Overrides host/port when set")
    redis_host: str = Field(default="localhost")
    redis_port: int = Field(default=6379)
    redis_db: int = Field(default=0)
    redis_max_connections: int = Field(default=10)

    kv_namespace: str = Field(default="readingroom", description="Key prefix for every key-value entry")
    kv_cas_retries: int = Field(default=5, ge=1, description="Compare-and-swap attempts per index update")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    duplicate_threshold: float = Field(default=0.7, ge=0.0, le=1.0)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
