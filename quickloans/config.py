import logging
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Inert stand-ins used when the platform is not configured. The URL points
# below a directory that does not exist, so every store call fails.
PLACEHOLDER_PLATFORM_URL = "sqlite:////nonexistent-quickloans-platform/placeholder.db"
PLACEHOLDER_PLATFORM_KEY = "placeholder-key"


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

    # Platform connection - database URL and access key
    PLATFORM_URL: str = ""
    PLATFORM_KEY: str = ""

    # Object storage for chat attachments
    STORAGE_DIR: str = "./storage"
    STORAGE_BUCKET: str = "profile-documents"
    PUBLIC_BASE_URL: str = "http://localhost:8000"
    MAX_ATTACHMENT_BYTES: int = 5 * 1024 * 1024

    # Typing indicator timings (seconds)
    TYPING_IDLE_SECONDS: float = 3.0
    TYPING_STALE_SECONDS: float = 10.0
    TYPING_SWEEP_INTERVAL: float = 5.0

    LOG_LEVEL: str = "INFO"

    @property
    def platform_configured(self) -> bool:
        return bool(self.PLATFORM_URL) and bool(self.PLATFORM_KEY)

    @property
    def platform_url(self) -> str:
        return self.PLATFORM_URL or PLACEHOLDER_PLATFORM_URL

    @property
    def platform_key(self) -> str:
        return self.PLATFORM_KEY or PLACEHOLDER_PLATFORM_KEY

    def warn_if_unconfigured(self) -> None:
        """Log a warning when placeholder platform values are in use."""
        if not self.platform_configured:
            logger.warning(
                "Platform environment variables are missing; using placeholder values. "
                "Set PLATFORM_URL and PLATFORM_KEY to connect the platform.",
                extra={
                    "platform_url_set": bool(self.PLATFORM_URL),
                    "platform_key_set": bool(self.PLATFORM_KEY),
                },
            )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()
