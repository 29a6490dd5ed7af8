import logging
from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application Settings
    APP_NAME: str = "Proctor Monitor"
    APP_VERSION: str = "1.0.0"
    HOST: str = "0.0.0.0"
    PORT: int = 8081
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = ["*"]

    # Camera
    CAMERA_INDEX: Optional[int] = None
    CAPTURE_WIDTH: int = 640
    CAPTURE_HEIGHT: int = 480
    CAPTURE_FPS: int = 30
    CAPTURE_READY_TIMEOUT: float = 5.0  # seconds to wait for the first frame

    # Face mesh
    FACE_MIN_DETECTION_CONFIDENCE: float = 0.5
    FACE_MIN_TRACKING_CONFIDENCE: float = 0.5

    # Escalation policy
    MAX_WARNINGS: int = 3
    VIOLATION_DEBOUNCE_MS: int = 5000
    TERMINATION_DELAY_MS: int = 3000
    LOGIN_REDIRECT: str = "/login"

    # Pointer tracking
    CURSOR_BUFFER_SIZE: int = 100
    CURSOR_LOG_INTERVAL_MS: int = 5000
    OPERATOR_CURSOR_SAMPLES: int = 10

    # Audit service
    AUDIT_SERVICE_URL: Optional[str] = None
    AUDIT_TIMEOUT: float = 10.0

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="allow",
    )

    @property
    def frame_interval(self) -> float:
        return 1.0 / self.CAPTURE_FPS


@lru_cache()
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO"):
    """Set up root logging once for the service process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
