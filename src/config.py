from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional

# Application version
VERSION = "1.0.0"


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 5000
    LOG_LEVEL: str = "info"
    RELOAD: bool = False
    DOCS_URL: str = "/docs"
    REDOC_URL: str = "/redoc"
    OPENAPI_URL: str = "/openapi.json"

    # Route Configuration
    ROOT_PATH: str = ""
    # Prefix for every route, e.g. "/api"
    API_PREFIX: str = ""

    # Identifier sent with every outbound request
    USER_AGENT: str = "IPTV-Player/1.0"

    # Per-request-class bounds (seconds)
    PLAYLIST_FETCH_TIMEOUT: float = 30.0
    STREAM_TIMEOUT: float = 15.0
    DOWNLOAD_TIMEOUT: float = 60.0
    EPG_FETCH_TIMEOUT: float = 30.0
    CHECK_TIMEOUT: float = 8.0
    # Max idle time between two upstream chunks once a relay is flowing
    STREAM_READ_TIMEOUT: float = 60.0

    RELAY_CHUNK_SIZE: int = 32768
    MAX_UPLOAD_SIZE: int = 50 * 1024 * 1024

    # Inbound policy
    RATE_LIMIT_WINDOW: float = 15 * 60
    RATE_LIMIT_MAX: int = 500
    # Comma-separated list of origins
    CORS_ORIGINS: str = "*"
    # Key the rate limit on X-Forwarded-For; only enable behind a trusted reverse proxy
    TRUST_PROXY_HEADERS: bool = False
    # Legacy single-origin variable, takes precedence over CORS_ORIGINS when set
    FRONTEND_URL: Optional[str] = None
    SECURITY_HEADERS: bool = True

    @field_validator("API_PREFIX")
    @classmethod
    def normalize_api_prefix(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if value and not value.startswith("/"):
            value = "/" + value
        return value

    @property
    def allowed_origins(self) -> List[str]:
        if self.FRONTEND_URL:
            return [self.FRONTEND_URL]
        origins = [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]
        return origins or ["*"]

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",  # No prefix, read directly from .env
        extra="ignore"  # Ignore extra environment variables from container
    )


# Global settings instance
settings = Settings()
