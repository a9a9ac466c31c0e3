import logging
import os
from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[1]
DATA_DIR = BASE_DIR / "data"

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"

# Cron expressions for the retention sweep
PRODUCTION_CLEANUP_SCHEDULE = "0 * * * *"     # every hour at minute 0
DEVELOPMENT_CLEANUP_SCHEDULE = "*/30 * * * *"  # every 30 minutes


class Settings(BaseSettings):
    """Service configuration, read from COMPRESS_* environment variables or .env."""

    environment: str = "development"
    service_name: str = "media-compress"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    cors_origins: List[str] = ["*"]

    # Storage
    database_url: str = f"sqlite:///{DATA_DIR / 'jobs.db'}"
    upload_dir: Path = DATA_DIR / "uploads"
    compressed_dir: Path = DATA_DIR / "compressed"
    max_upload_bytes: int = 2 * 1024 * 1024 * 1024  # 2GB

    # Retention
    retention_hours: float = 2
    cleanup_schedule: Optional[str] = None

    # Dispatching
    dispatch_batch_size: int = 5
    dispatch_interval_seconds: int = 10
    stalled_job_minutes: int = 120
    run_background_worker: bool = True

    # External tools
    ffmpeg_binary: str = "ffmpeg"
    ghostscript_binary: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="COMPRESS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    def effective_cleanup_schedule(self) -> str:
        if self.cleanup_schedule:
            return self.cleanup_schedule
        return PRODUCTION_CLEANUP_SCHEDULE if self.is_production else DEVELOPMENT_CLEANUP_SCHEDULE

    def effective_ghostscript_binary(self) -> str:
        if self.ghostscript_binary:
            return self.ghostscript_binary
        return "gswin64c" if os.name == "nt" else "gs"


settings = Settings()


def ensure_directories() -> None:
    """Create the upload and output directories (and the SQLite parent dir) if missing."""
    settings.upload_dir.mkdir(parents=True, exist_ok=True)
    settings.compressed_dir.mkdir(parents=True, exist_ok=True)
    if settings.database_url.startswith("sqlite:///"):
        db_path = Path(settings.database_url[len("sqlite:///"):])
        if str(db_path) != ":memory:":
            db_path.parent.mkdir(parents=True, exist_ok=True)


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(level=(level or settings.log_level).upper(), format=LOG_FORMAT)
