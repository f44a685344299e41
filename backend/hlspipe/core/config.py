"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
Every value has a development default so the worker can boot against a local
broker and registry without any setup.
"""

from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "HLS Transcoding Pipeline"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Queue (AMQP broker)
    QUEUE_URL: str = "amqp://localhost"
    QUEUE_NAME: str = "transcoding-video"
    QUEUE_HEARTBEAT_SECONDS: int = 0
    MAX_QUEUE_CAPACITY: int = 10

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_INTERVAL_SECONDS: float = 60.0

    # Consumer
    CONSUMER_ENABLED: bool = True
    CONSUMER_POLL_TIMEOUT_SECONDS: float = 1.0

    # Storage
    UPLOAD_DIR: str = "uploads"
    OUTPUT_DIR: str = "transcoded-video"
    TRANSCODED_PATH_PREFIX: str = "transcoded"

    # Task registry API
    REGISTRY_BASE_URL: str = "http://localhost:3000/api/"
    REGISTRY_TIMEOUT_SECONDS: float = 30.0
    REGISTRY_STARTUP_CHECK: bool = True

    # FFmpeg
    FFMPEG_PATH: str = "/usr/bin/ffmpeg"
    ENCODER_PRESET: str = "veryfast"
    HLS_SEGMENT_SECONDS: int = 10
    ENCODER_TIMEOUT_SECONDS: Optional[float] = None

    # Tracing
    OTLP_ENDPOINT: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
