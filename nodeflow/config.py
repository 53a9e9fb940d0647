"""
Configuration settings for the nodeflow execution core.
"""

from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Application
    APP_NAME: str = "nodeflow"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = True

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Scheduler
    CONCURRENCY: int = 4  # Max nodes per wave
    DEFAULT_NODE_TIMEOUT_MS: int = 0  # 0 = no per-node timeout
    RETRY_BACKOFF_MS: int = 0  # 0 = retry immediately
    RETRY_BACKOFF_MAX_MS: int = 8000
    RETRY_ONLY_TRANSIENT: bool = False  # Retry only timeouts, 429s, 5xx, dropped connections
    CIRCUIT_BREAKER_THRESHOLD: int = 0  # Failed attempts per run before retries stop, 0 = off
    DOWNSTREAM_POLICY: str = "attempt_anyway"
    EXECUTION_TIMEOUT: int = 0  # Seconds, 0 = no run deadline

    # Validation
    MAX_NODES: int = 50
    MAX_DEPTH: int = 20
    OUTPUT_NODE_TYPES: List[str] = ["output"]

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()
