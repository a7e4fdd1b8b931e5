"""Application configuration using Pydantic settings."""
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

RAW_CACHE_NAME = "dashboard_raw_cache"


class Settings(BaseSettings):
    """Central configuration for the dashboard service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    supabase_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("SUPABASE_URL", "supabase_url")
    )
    supabase_key: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("SUPABASE_ANON_KEY", "supabase_key")
    )

    projects_table: str = "podio_data"
    ahj_table: str = "ahj"
    utility_table: str = "utility"
    financier_table: str = "financier"

    fetch_timeout_seconds: float = 25.0
    cache_dir: Path = Path(".cache")

    # Map placement for projects without a parseable location (Salt Lake City).
    fallback_latitude: float = 40.7608
    fallback_longitude: float = -111.8910

    default_reference_latitude: Optional[float] = None
    default_reference_longitude: Optional[float] = None

    log_level: str = "INFO"

    @property
    def cache_path(self) -> Path:
        return self.cache_dir / f"{RAW_CACHE_NAME}.json"


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()
