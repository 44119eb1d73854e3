"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
Credentials have development defaults only; a warning is logged when they are used.
"""

from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "vidsqueeze"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 3000

    # External tools
    FFPROBE_PATH: str = "ffprobe"
    FFMPEG_PATH: str = "ffmpeg"

    # Basic auth
    LOGIN: Optional[str] = None
    PASSWORD: Optional[str] = None

    # Storage
    UPLOADS_DIR: str = "uploads"
    STATIC_PATH: Optional[str] = None
    MAX_FILE_SIZE_BYTES: int = 1000 * 1000 * 1000

    # Job limits
    MAX_EXECUTION_TIME_SECONDS: float = 300.0  # per encode pass
    THUMBNAIL_TIMEOUT_SECONDS: float = 60.0
    PROBE_TIMEOUT_SECONDS: float = 60.0

    # Retention
    AGE_LIMIT_SECONDS: float = 15 * 60
    SWEEP_INTERVAL_SECONDS: float = 10 * 60

    # Admission control for POST /api/transcode
    RATE_LIMIT_MAX_REQUESTS: int = 3
    RATE_LIMIT_WINDOW_SECONDS: float = 60.0

    # Bitrate planning
    ALLOWED_VIDEO_CODECS: list[str] = ["libx264", "libx265"]
    DEFAULT_AUDIO_BITRATE_KBPS: int = 128
    ENFORCE_BITRATE_FLOOR: bool = True
    MIN_VIDEO_BITRATE_KBPS: int = 384
    CORRECT_ROTATION: bool = True

    # Delivery of an unfinished or missing artifact
    DELIVERY_MISS_POLICY: Literal["redirect", "not_found"] = "redirect"

    # Observability
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    TRACING_CONSOLE_EXPORT: bool = False

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @property
    def credentials_are_default(self) -> bool:
        return self.LOGIN is None and self.PASSWORD is None

    @property
    def login(self) -> str:
        return self.LOGIN or "user"

    @property
    def password(self) -> str:
        return self.PASSWORD or "password"

    def uploads_path(self) -> Path:
        """Absolute, canonical uploads directory."""
        return Path(self.UPLOADS_DIR).expanduser().resolve()

    def static_path(self) -> Optional[Path]:
        """Static asset directory, or None when none can be found."""
        if self.STATIC_PATH:
            return Path(self.STATIC_PATH).expanduser().resolve()
        for candidate in (
            Path(__file__).resolve().parent.parent / "static",
            Path.cwd() / "static",
        ):
            if candidate.is_dir():
                return candidate.resolve()
        return None


settings = Settings()
