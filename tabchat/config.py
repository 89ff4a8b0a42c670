from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database / logging
    DATABASE_URL: str = "sqlite:///./tabchat.db"
    LOG_LEVEL: str = "INFO"

    # Shared secret used to verify the X-User-Signature identity assertion.
    # Empty means the X-User-Id header is trusted as-is.
    AUTH_SECRET: str = ""

    # Topic classifier (Gemini). Empty API key = no classifier configured.
    CLASSIFIER_API_KEY: str = ""
    CLASSIFIER_MODEL: str = "gemini-1.5-flash"
    CLASSIFIER_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    CLASSIFIER_TIMEOUT_SECONDS: float = 10.0
    CLASSIFIER_TEMPERATURE: float = 0.7
    CLASSIFIER_TOP_K: int = 40
    CLASSIFIER_TOP_P: float = 0.95
    CLASSIFIER_MAX_OUTPUT_TOKENS: int = 100

    # Topic detection thresholds
    MIN_MESSAGES_FOR_DETECTION: int = 5
    MAX_MESSAGES_TO_ANALYZE: int = 15
    STOPWORDS_FILE: Optional[str] = None

    # Store retry policy for document creation
    STORE_CREATE_MAX_ATTEMPTS: int = 3
    STORE_RETRY_BACKOFF_SECONDS: float = 2.0

    BACKGROUND_WORKERS: int = 4
    SUBSCRIPTION_POLL_SECONDS: float = 0.5

    @property
    def classifier_configured(self) -> bool:
        return bool(self.CLASSIFIER_API_KEY)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()
