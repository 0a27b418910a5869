from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

# Application version
VERSION = "0.1.0"


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8085
    LOG_LEVEL: str = "info"
    RELOAD: bool = False
    DOCS_URL: str = "/docs"
    REDOC_URL: str = "/redoc"
    OPENAPI_URL: str = "/openapi.json"

    # Route Configuration
    ROOT_PATH: str = ""
    # Origin used when rewriting manifest URIs (e.g. https://tv.example.com).
    # When unset the origin is derived from each request, honouring
    # reverse proxy forwarding headers.
    PUBLIC_URL: Optional[str] = None

    # Outbound HTTP client
    DEFAULT_USER_AGENT: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/115.0.0.0 Safari/537.36"
    DEFAULT_CONNECTION_TIMEOUT: float = 10.0
    # Upstream read timeout, applies per chunk while streaming segments
    DEFAULT_READ_TIMEOUT: float = 30.0
    # Players may pause reading while their buffer is full
    STREAM_WRITE_TIMEOUT: float = 300.0
    MAX_REDIRECTS: int = 10
    STREAM_CHUNK_SIZE: int = 65536

    # Redis Configuration for playlist storage. When disabled playlists are
    # kept in process memory and lost on restart.
    REDIS_ENABLED: bool = False
    REDIS_HOST: str = "localhost"
    REDIS_SERVER_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

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
