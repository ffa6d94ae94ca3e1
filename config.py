"""
Application settings loaded from the environment and an optional .env file.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # Server
    environment: str = "development"  # development, production, test
    api_base_url: str = "http://localhost:8000/api"
    api_prefix: str = "/api"

    # Database
    database_url: str = "sqlite:///./summarizer.db"
    database_echo: bool = False

    # Supabase (federated identity); empty url disables it
    supabase_url: str = ""
    supabase_anon_key: str = ""
    supabase_service_role_key: str = ""

    # JWT
    jwt_secret: str = Field(default="change-me-access-token-secret-min-32-chars", min_length=32)
    jwt_algorithm: str = "HS256"
    jwt_expires_minutes: int = 15
    refresh_token_secret: str = Field(
        default="change-me-refresh-token-secret-min-32-chars", min_length=32
    )
    refresh_token_expires_days: int = 7

    # Gemini
    gemini_api_key: str = Field(
        default="", validation_alias=AliasChoices("gemini_api_key", "google_api_key")
    )
    gemini_model: str = "gemini-flash-latest"
    gemini_max_tokens: int = 4000
    gemini_temperature: float = 0.3

    # Transcript chunking
    max_transcript_length: int = 50000  # chars
    chunk_max_tokens: int = 500
    chunk_delay_seconds: float = 1.0

    # CORS (comma-separated, "*" allows everything)
    allowed_origins: str = "http://localhost:3000"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json, text
    log_file: Optional[str] = None

    # Rate limiting
    enable_rate_limiting: bool = True
    rate_limit_window_seconds: int = 900
    rate_limit_max_requests_free: int = 10
    rate_limit_max_requests_premium: int = 100

    # Credits
    credits_per_summary: int = Field(default=1, ge=1)
    free_plan_monthly_credits: int = 10
    premium_plan_monthly_credits: int = 1000

    # Summaries
    max_summary_history: int = 100  # per user
    request_timeout_seconds: float = 30.0

    @field_validator("database_url")
    @classmethod
    def _normalize_postgres_scheme(cls, value: str) -> str:
        # Supabase/Heroku hand out 'postgres://' which SQLAlchemy no longer accepts
        if value.startswith("postgres://"):
            return value.replace("postgres://", "postgresql://", 1)
        return value

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def supabase_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)

    def monthly_credits_for(self, plan) -> int:
        """Monthly credit allotment for a plan (``UserPlan`` or its name)."""
        name = getattr(plan, "value", plan)
        if name == "PREMIUM":
            return self.premium_plan_monthly_credits
        return self.free_plan_monthly_credits


@lru_cache
def get_settings() -> Settings:
    return Settings()
