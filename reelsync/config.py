"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


PLACEHOLDER_API_KEYS: frozenset[str] = frozenset(
    {"YOUR_API_KEY_HERE", "YOUR_TMDB_API_KEY", "changeme"}
)


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="ReelSync", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_image_base_url: str = Field(
        default="https://image.tmdb.org/t/p/w500", alias="TMDB_IMAGE_BASE_URL"
    )
    tmdb_language: str = Field(default="en-US", alias="TMDB_LANGUAGE")
    tmdb_timeout_seconds: float = Field(
        default=10.0, alias="TMDB_TIMEOUT", gt=0, le=120
    )

    detail_concurrency: int = Field(
        default=25, alias="DETAIL_CONCURRENCY", ge=1, le=100
    )

    browse_page_limit: int = Field(
        default=100, alias="BROWSE_PAGE_LIMIT", ge=1, le=500
    )
    search_page_limit: int = Field(
        default=50, alias="SEARCH_PAGE_LIMIT", ge=1, le=500
    )
    stagger_batch_pages: int = Field(
        default=3, alias="STAGGER_BATCH_PAGES", ge=1, le=20
    )
    stagger_initial_delay: float = Field(
        default=0.5, alias="STAGGER_INITIAL_DELAY", ge=0
    )
    stagger_delay: float = Field(default=0.15, alias="STAGGER_DELAY", ge=0)
    remote_search_pages: int = Field(
        default=2, alias="REMOTE_SEARCH_PAGES", ge=1, le=50
    )

    view_page_size: int = Field(default=20, alias="VIEW_PAGE_SIZE")
    refresh_interval_seconds: float = Field(
        default=1.5, alias="REFRESH_INTERVAL", ge=0
    )
    reveal_threshold: int = Field(default=100, alias="REVEAL_THRESHOLD", ge=0)
    reveal_delay_seconds: float = Field(default=2.0, alias="REVEAL_DELAY", ge=0)
    enhanced_refresh_delay_seconds: float = Field(
        default=3.0, alias="ENHANCED_REFRESH_DELAY", ge=0
    )
    final_refresh_delay_seconds: float = Field(
        default=8.0, alias="FINAL_REFRESH_DELAY", ge=0
    )
    target_movie_count: int = Field(
        default=700, alias="TARGET_MOVIE_COUNT", ge=1
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./reelsync.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("tmdb_api_key", mode="before")
    @classmethod
    def _strip_api_key(cls, value: object) -> object:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value

    @field_validator("view_page_size")
    @classmethod
    def _positive_page_size(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("VIEW_PAGE_SIZE must be a positive integer")
        return value

    @model_validator(mode="after")
    def _order_refresh_delays(self) -> "Settings":
        """The follow-up refreshes must come after the initial reveal."""

        if self.enhanced_refresh_delay_seconds < self.reveal_delay_seconds:
            raise ValueError(
                "ENHANCED_REFRESH_DELAY must not be shorter than REVEAL_DELAY"
            )
        if self.final_refresh_delay_seconds < self.enhanced_refresh_delay_seconds:
            raise ValueError(
                "FINAL_REFRESH_DELAY must not be shorter than ENHANCED_REFRESH_DELAY"
            )
        return self

    @property
    def tmdb_configured(self) -> bool:
        """Return ``True`` when a usable TMDb API key is available."""

        key = self.tmdb_api_key
        if not key:
            return False
        if key in PLACEHOLDER_API_KEYS or key.startswith("process.env"):
            return False
        return True

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
