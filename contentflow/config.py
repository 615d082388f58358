"""
Configuration settings for the ContentFlow engine.
"""

from pydantic_settings import BaseSettings
from typing import Optional
import os


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Application
    APP_NAME: str = "ContentFlow"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = True

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Scheduler
    MAX_CONCURRENCY: int = os.cpu_count() or 4
    MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY: float = 0.5  # Seconds, doubled per failed attempt
    RETRY_MAX_DELAY: float = 8.0
    NODE_TIMEOUT: float = 120.0  # Seconds per attempt
    CAPABILITY_LATENCY_THRESHOLD: float = 30.0  # Max wait per streamed chunk

    # AI generation service (OpenAI-compatible completions endpoint)
    GENERATION_URL: Optional[str] = None
    GENERATION_MODEL: str = "gpt-4o-mini"
    GENERATION_API_KEY: Optional[str] = None

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()
