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

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./chatdigest.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # HTTP server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Webhook Security - required
    WEBHOOK_SECRET: str

    # Generation service: comma-separated list, tried in order
    GEMINI_API_KEYS: str = ""
    GEMINI_MODEL: str = "gemini-1.5-flash"

    # Chat transport (Evolution API instance)
    EVOLUTION_API_URL: str = "http://localhost:8080"
    EVOLUTION_API_KEY: str = ""
    EVOLUTION_INSTANCE_NAME: str = "chatdigest"
    TRANSPORT_SELF_ID: str = ""

    # Identity of the account this process ingests for
    OWNER_ID: Optional[str] = None
    STATUS_ID: str = "whatsapp_scraper"

    # Scheduling
    SCHEDULE_TIMEZONE: str = "UTC"
    TICK_INTERVAL_SECONDS: float = 5.0
    TICK_ENABLED: bool = True

    @property
    def gemini_credentials(self) -> list[str]:
        """Configured generation credentials, in failover order."""
        return [key.strip() for key in self.GEMINI_API_KEYS.split(",") if key.strip()]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every call.
    """
    return Settings()
