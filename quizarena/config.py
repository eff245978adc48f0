"""Centralised backend configuration loaded from environment / .env file."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


class BreakerSettings(BaseModel):
    """Tuning for one collaborator's circuit breaker."""

    failure_threshold: int = Field(default=3, ge=1)
    call_timeout: float = Field(default=30.0, gt=0, description="Seconds before a call counts as failed")
    cooldown: float = Field(default=30.0, ge=0, description="Seconds the breaker stays OPEN")


class Settings(BaseSettings):
    """Application settings; values are sourced from env vars or ``.env``."""

    model_config = SettingsConfigDict(
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ── Mistral API ──────────────────────────────────────────────────────
    mistral_api_key: str = Field(default="", description="Mistral La Plateforme API key")

    # Model identifiers
    mistral_large_model: str = "mistral-large-latest"
    mistral_small_model: str = "mistral-small-latest"
    mistral_ocr_model: str = "mistral-ocr-latest"

    # ── Content sources ──────────────────────────────────────────────────
    firecrawl_api_key: str = ""
    firecrawl_api_url: str = "https://api.firecrawl.dev/v1/scrape"
    supadata_api_key: str = ""
    supadata_api_url: str = "https://api.supadata.ai/v1/youtube/transcript"
    youtube_api_key: str = ""
    youtube_api_url: str = "https://www.googleapis.com/youtube/v3/videos"
    max_source_chars: int = 8000
    min_scraped_chars: int = 100
    max_pdf_bytes: int = 10 * 1024 * 1024

    # ── Circuit breakers (one per collaborator) ──────────────────────────
    generator_breaker: BreakerSettings = BreakerSettings(failure_threshold=3, call_timeout=30.0, cooldown=30.0)
    document_reader_breaker: BreakerSettings = BreakerSettings(failure_threshold=3, call_timeout=45.0, cooldown=45.0)
    scraper_breaker: BreakerSettings = BreakerSettings(failure_threshold=3, call_timeout=45.0, cooldown=45.0)
    transcript_breaker: BreakerSettings = BreakerSettings(failure_threshold=3, call_timeout=20.0, cooldown=20.0)
    video_metadata_breaker: BreakerSettings = BreakerSettings(failure_threshold=5, call_timeout=15.0, cooldown=15.0)

    # ── Sessions ─────────────────────────────────────────────────────────
    max_items: int = Field(default=30, ge=1)
    session_code_attempts: int = Field(default=5, ge=1)
    completion_attempts: int = Field(default=5, ge=1)
    item_seconds: float = 30.0

    # ── Cache ────────────────────────────────────────────────────────────
    session_cache_ttl: float = 300.0
    leaderboard_cache_ttl: float = 60.0

    # ── Identity ─────────────────────────────────────────────────────────
    require_identity_token: bool = Field(
        default=False,
        description="Require a signed bearer token whose subject matches the acting address",
    )
    identity_secret: str = "change-me"
    identity_algorithm: str = "HS256"
    identity_token_hours: int = 24

    # ── Database ─────────────────────────────────────────────────────────
    database_url: str = Field(
        default=f"sqlite:///{_PROJECT_ROOT / 'data' / 'quizarena.db'}",
        description="SQLAlchemy connection URL for local persistence",
    )

    # ── Server ───────────────────────────────────────────────────────────
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000", "http://localhost:5173"])
    debug: bool = False


settings = Settings()
