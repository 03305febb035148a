"""
Application configuration loaded from environment variables.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    """Application settings from environment variables."""

    # Google OAuth
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = "http://localhost:8000/api/auth/callback"

    # Frontend URL for CORS and redirects
    frontend_url: str = "http://localhost:3000"

    # Completion backend
    completion_provider: str = "gemini"  # gemini, openai
    gemini_api_key: str = ""
    openai_api_key: str = ""
    primary_model: str = "gemini-2.5-pro"
    fallback_models: List[str] = [
        "gemini-2.5-flash",
        "gemini-2.0-flash",
        "gemini-2.0-pro",
        "gemini-1.5-pro",
        "gemini-1.5-flash",
        "gemini-2.0-flash-lite",
    ]
    preferred_model_timeout: float = 30.0
    fallback_model_timeout: float = 20.0
    model_max_attempts: int = 3
    model_backoff_base: float = 1.0
    discover_models_on_startup: bool = False
    sticky_model_switch: bool = True

    # Conversation compaction
    compaction_char_limit: int = 30000
    compaction_token_limit: int = 8000
    compaction_safety_ratio: float = 0.9
    compaction_preserve_recent: int = 12
    compaction_trigger_messages: int = 10
    history_compaction_use_ai: bool = False

    # Google Calendar
    calendar_timeout: float = 15.0
    calendar_min_interval: float = 1.0
    calendar_max_retries: int = 5
    calendar_backoff_base: float = 2.0
    calendar_backoff_cap: float = 32.0
    calendar_query_window_days: int = 30

    # Session
    session_secret: str = "dev-secret-change-in-production"
    session_expire_hours: int = 24 * 30
    sessions_file: str = "sessions.json"
    session_refresh_horizon_minutes: int = 5
    session_sweep_interval_seconds: int = 3600

    # Debug mode
    debug: bool = True
    log_level: str = "INFO"

    # Google OAuth scopes
    @property
    def google_scopes(self) -> list[str]:
        return [
            "openid",
            "https://www.googleapis.com/auth/calendar",
            "https://www.googleapis.com/auth/calendar.events",
            "https://www.googleapis.com/auth/userinfo.profile",
            "https://www.googleapis.com/auth/userinfo.email",
        ]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
