from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Built once at startup and passed explicitly to the app factory,
    the webhook processor and the media pipeline.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database
    DATABASE_URL: str = "sqlite:///./data/social_insight.sqlite"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Webhook handshake and raw body debug log
    WEBHOOK_VERIFY_TOKEN: str = "social_insight_token"
    WEBHOOK_LOG_PATH: str = "./data/webhook.log"

    # Media storage and download
    MEDIA_STORAGE_PATH: str = "./data/media"
    MEDIA_CDN_BASE_URL: str = "https://mmg.whatsapp.net"
    MEDIA_DOWNLOAD_TIMEOUT: float = 30.0
    MEDIA_VERIFY_TLS: bool = True
    # Also accept MACs computed over iv || ciphertext
    MEDIA_ACCEPT_WIRE_ORDER_MAC: bool = False


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file more than once.
    """
    return Settings()
