"""Configuration settings for the practice core."""
import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
env_file = ".env.test" if os.getenv("ENV") == "test" else ".env"
load_dotenv(env_file)

# Difficulty model defaults
DEFAULT_EASE = 2.5
MIN_EASE = 1.3

# Batch composition
LEECH_FRACTION = 0.2  # 20% of a batch may be leeches
REVIEW_FRACTION = 0.1  # 10% of a batch may be near-future reviews


@dataclass
class DatabaseSettings:
    """Local queue database settings."""
    url: str = os.getenv("QUEUE_DATABASE_URL", "sqlite:///spellstars_queue.db")
    echo: bool = os.getenv("DATABASE_ECHO", "false").lower() == "true"


@dataclass
class RemoteSettings:
    """Remote difficulty store settings."""
    url: str = os.getenv("SUPABASE_URL", "")
    anon_key: str = os.getenv("SUPABASE_ANON_KEY", "")
    access_token: Optional[str] = os.getenv("SUPABASE_ACCESS_TOKEN")
    timeout_seconds: float = float(os.getenv("REMOTE_TIMEOUT_SECONDS", "5"))
    audio_bucket: str = os.getenv("AUDIO_BUCKET", "audio-recordings")


@dataclass
class LoggingSettings:
    """Logging configuration settings."""
    level: str = os.getenv("LOG_LEVEL", "INFO")
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: Optional[str] = os.getenv("LOG_FILE", None)


@dataclass
class DifficultySettings:
    """Difficulty model tunables."""
    default_ease: float = float(os.getenv("DEFAULT_EASE", str(DEFAULT_EASE)))
    min_ease: float = float(os.getenv("MIN_EASE", str(MIN_EASE)))
    success_step: float = float(os.getenv("EASE_SUCCESS_STEP", "0.1"))
    miss_step: float = float(os.getenv("EASE_MISS_STEP", "0.2"))


@dataclass
class SchedulerSettings:
    """Batch selection settings."""
    batch_limit: int = int(os.getenv("BATCH_LIMIT", "15"))
    leech_fraction: float = float(os.getenv("LEECH_FRACTION", str(LEECH_FRACTION)))
    review_fraction: float = float(os.getenv("REVIEW_FRACTION", str(REVIEW_FRACTION)))
    leech_min_reviews: int = int(os.getenv("LEECH_MIN_REVIEWS", "3"))
    leech_lapses: int = int(os.getenv("LEECH_LAPSES", "3"))
    leech_max_ease: float = float(os.getenv("LEECH_MAX_EASE", "1.8"))
    leech_error_rate: float = float(os.getenv("LEECH_ERROR_RATE", "0.4"))
    review_window_days: int = int(os.getenv("REVIEW_WINDOW_DAYS", "2"))
    report_limit: int = int(os.getenv("REPORT_LIMIT", "10"))
    server_side: bool = os.getenv("SCHEDULER_SERVER_SIDE", "false").lower() == "true"


@dataclass
class SyncSettings:
    """Sync engine settings."""
    max_retries: int = int(os.getenv("SYNC_MAX_RETRIES", "5"))
    interval_seconds: float = float(os.getenv("SYNC_INTERVAL_SECONDS", "60"))
    backoff_base_seconds: float = float(os.getenv("SYNC_BACKOFF_BASE_SECONDS", "5"))
    backoff_max_seconds: float = float(os.getenv("SYNC_BACKOFF_MAX_SECONDS", "900"))
    prune_after_days: int = int(os.getenv("SYNC_PRUNE_AFTER_DAYS", "7"))
    prune_interval_seconds: float = float(os.getenv("SYNC_PRUNE_INTERVAL_SECONDS", "86400"))


def get_database_settings() -> DatabaseSettings:
    """Get database settings."""
    return DatabaseSettings()


def get_remote_settings() -> RemoteSettings:
    """Get remote store settings."""
    return RemoteSettings()


def get_logging_settings() -> LoggingSettings:
    """Get logging settings."""
    return LoggingSettings()


def get_difficulty_settings() -> DifficultySettings:
    """Get difficulty model settings."""
    return DifficultySettings()


def get_scheduler_settings() -> SchedulerSettings:
    """Get batch selection settings."""
    return SchedulerSettings()


def get_sync_settings() -> SyncSettings:
    """Get sync engine settings."""
    return SyncSettings()


@dataclass
class Settings:
    """Main settings class that combines all configuration settings."""
    database: DatabaseSettings = field(default_factory=get_database_settings)
    remote: RemoteSettings = field(default_factory=get_remote_settings)
    logging: LoggingSettings = field(default_factory=get_logging_settings)
    difficulty: DifficultySettings = field(default_factory=get_difficulty_settings)
    scheduler: SchedulerSettings = field(default_factory=get_scheduler_settings)
    sync: SyncSettings = field(default_factory=get_sync_settings)

    def validate(self) -> None:
        """Validate settings and raise ValueError if invalid."""
        if self.difficulty.min_ease <= 0:
            raise ValueError("MIN_EASE must be positive")

        if self.difficulty.default_ease < self.difficulty.min_ease:
            raise ValueError("DEFAULT_EASE cannot be lower than MIN_EASE")

        if self.scheduler.batch_limit < 1:
            raise ValueError("BATCH_LIMIT must be positive")

        for name, value in (
            ("LEECH_FRACTION", self.scheduler.leech_fraction),
            ("REVIEW_FRACTION", self.scheduler.review_fraction),
            ("LEECH_ERROR_RATE", self.scheduler.leech_error_rate),
        ):
            if value < 0 or value > 1:
                raise ValueError(f"{name} must be between 0 and 1")

        if self.sync.max_retries < 0:
            raise ValueError("SYNC_MAX_RETRIES cannot be negative")

        if self.sync.backoff_base_seconds > self.sync.backoff_max_seconds:
            raise ValueError("SYNC_BACKOFF_BASE_SECONDS cannot exceed SYNC_BACKOFF_MAX_SECONDS")

        if self.remote.timeout_seconds <= 0:
            raise ValueError("REMOTE_TIMEOUT_SECONDS must be positive")


# Create global settings instance
settings = Settings()
settings.validate()
