from pydantic_settings import BaseSettings
from typing import List

class Settings(BaseSettings):
    app_name: str = "Multi AI Chat Engine"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./chats.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Provider connections
    CONNECT_TIMEOUT_SECONDS: float = 15.0

    # Inactivity budgets (no data for N seconds aborts the stream)
    STREAM_TIMEOUT_SECONDS: float = 60.0
    IMAGE_STREAM_TIMEOUT_SECONDS: float = 300.0
    WATCHDOG_INTERVAL_SECONDS: float = 1.0

    # Streaming persistence
    CHECKPOINT_INTERVAL_CHARS: int = 100
    TITLE_MAX_LENGTH: int = 30

    # Image generation polling (60 x 5s = 5 minutes)
    IMAGE_POLL_INTERVAL_SECONDS: float = 5.0
    IMAGE_MAX_POLL_ATTEMPTS: int = 60

    # Retry policy for opening a stream
    STREAM_MAX_RETRIES: int = 1
    RETRY_INITIAL_DELAY_SECONDS: float = 1.0
    RETRY_MAX_DELAY_SECONDS: float = 30.0
    RETRY_BACKOFF_MULTIPLIER: float = 2.0

    # HTTP API
    CORS_ORIGINS: List[str] = ["*"]

    class Config:
        env_file = ".env"

settings = Settings()
