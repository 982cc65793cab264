"""Configuration settings for the flash drill application."""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Define base directory
BASE_DIR = Path(__file__).parent.parent.parent

# Load environment variables from .env file
env_file = ".env.test" if os.getenv("ENV") == "test" else ".env"
load_dotenv(env_file)


# Define data directories from environment variables
DATA_DIR = Path(os.getenv("DATA_DIR", "./data"))
LOGS_DIR = DATA_DIR / "logs"
SEED_DIR = Path(__file__).parent / "data"

# Scheduling settings
SRS_DAYS = [0, 1, 3, 7, 14]  # days until next review, indexed by maturity level
FLASH_TIMES = [1, 2, 3, 5]  # seconds
SESSION_SIZE = 5
MAX_DAYS = 365  # record retention window
SCHEDULING_POLICIES = ("level", "interval")


def ensure_directories() -> None:
    """Ensure all required directories exist."""
    directories = [
        DATA_DIR,
        LOGS_DIR,
    ]

    for directory in directories:
        directory.mkdir(parents=True, exist_ok=True)


@dataclass
class PathSettings:
    """Path configuration settings."""
    base_dir: Path = BASE_DIR
    data_dir: Path = DATA_DIR
    logs_dir: Path = LOGS_DIR
    seed_dir: Path = SEED_DIR


@dataclass
class DatabaseSettings:
    """Local store configuration settings."""
    url: str = os.getenv("LOCAL_STORE_URL", "sqlite:///flashdrill.db")
    echo: bool = os.getenv("DATABASE_ECHO", "false").lower() == "true"


@dataclass
class RemoteSettings:
    """Shared remote store configuration settings."""
    url: str = os.getenv("REMOTE_STORE_URL", "")
    token: Optional[str] = os.getenv("REMOTE_STORE_TOKEN")
    timeout: float = float(os.getenv("REMOTE_STORE_TIMEOUT", "10.0"))

    @property
    def enabled(self) -> bool:
        return bool(self.url)


@dataclass
class LoggingSettings:
    """Logging configuration settings."""
    level: str = os.getenv("LOG_LEVEL", "INFO")
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    dir: Optional[str] = os.getenv("LOG_DIR", None)
    rotation: str = os.getenv("LOG_ROTATION", "midnight")
    interval: int = int(os.getenv("LOG_INTERVAL", "1"))
    backup_count: int = int(os.getenv("LOG_BACKUP_COUNT", "7"))


def get_admin_ids() -> list[int]:
    """Get admin IDs from environment variable."""
    return [int(id_) for id_ in os.getenv("TELEGRAM_ADMIN_IDS", "").split(",") if id_]


def get_srs_days() -> list[int]:
    """Get level policy day offsets from environment variable."""
    raw = os.getenv("SRS_DAYS", "")
    return [int(day) for day in raw.split(",") if day.strip()] or list(SRS_DAYS)


@dataclass
class BotSettings:
    """Bot configuration settings."""
    token: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
    admin_ids: list[int] = field(default_factory=get_admin_ids)


@dataclass
class SessionSettings:
    """Study session settings."""
    flash_time: int = int(os.getenv("FLASH_TIME", "3"))
    flash_times: list[int] = field(default_factory=lambda: list(FLASH_TIMES))
    session_size: int = int(os.getenv("SESSION_SIZE", str(SESSION_SIZE)))
    recall_grace_delay: float = float(os.getenv("RECALL_GRACE_DELAY", "0.3"))
    min_priority: int = int(os.getenv("MIN_PRIORITY", "3"))
    dataset: str = os.getenv("DATASET", "words")
    scheduling_policy: str = os.getenv("SCHEDULING_POLICY", "level")
    srs_days: list[int] = field(default_factory=get_srs_days)


@dataclass
class SyncSettings:
    """Sync layer settings."""
    settle_delay: float = float(os.getenv("SYNC_SETTLE_DELAY", "2.5"))
    retention_days: int = int(os.getenv("RECORD_RETENTION_DAYS", str(MAX_DAYS)))


@dataclass
class MonitoringSettings:
    """Prometheus metrics settings."""
    enabled: bool = os.getenv("METRICS_ENABLED", "false").lower() == "true"
    port: int = int(os.getenv("METRICS_PORT", "9090"))


def get_path_settings() -> PathSettings:
    """Get path settings."""
    return PathSettings()


def get_database_settings() -> DatabaseSettings:
    """Get database settings."""
    return DatabaseSettings()


def get_remote_settings() -> RemoteSettings:
    """Get remote store settings."""
    return RemoteSettings()


def get_logging_settings() -> LoggingSettings:
    """Get logging settings."""
    return LoggingSettings()


def get_bot_settings() -> BotSettings:
    """Get bot settings."""
    return BotSettings()


def get_session_settings() -> SessionSettings:
    """Get session settings."""
    return SessionSettings()


def get_sync_settings() -> SyncSettings:
    """Get sync settings."""
    return SyncSettings()


def get_monitoring_settings() -> MonitoringSettings:
    """Get monitoring settings."""
    return MonitoringSettings()


@dataclass
class Settings:
    """Main settings class that combines all configuration settings."""
    paths: PathSettings = field(default_factory=get_path_settings)
    database: DatabaseSettings = field(default_factory=get_database_settings)
    remote: RemoteSettings = field(default_factory=get_remote_settings)
    logging: LoggingSettings = field(default_factory=get_logging_settings)
    bot: BotSettings = field(default_factory=get_bot_settings)
    session: SessionSettings = field(default_factory=get_session_settings)
    sync: SyncSettings = field(default_factory=get_sync_settings)
    monitoring: MonitoringSettings = field(default_factory=get_monitoring_settings)

    def validate(self) -> None:
        """Validate settings and raise ValueError if invalid."""
        if self.session.session_size < 1:
            raise ValueError("SESSION_SIZE must be positive")

        if self.session.flash_time not in self.session.flash_times:
            raise ValueError(f"FLASH_TIME must be one of {self.session.flash_times}")

        if self.session.min_priority < 0 or self.session.min_priority > 3:
            raise ValueError("MIN_PRIORITY must be between 0 and 3")

        if self.session.scheduling_policy not in SCHEDULING_POLICIES:
            raise ValueError(f"SCHEDULING_POLICY must be one of {SCHEDULING_POLICIES}")

        if not self.session.srs_days or any(day < 0 for day in self.session.srs_days):
            raise ValueError("SRS_DAYS must be a list of non-negative day offsets")

        if self.session.recall_grace_delay < 0 or self.sync.settle_delay < 0:
            raise ValueError("Delays cannot be negative")

        if self.sync.retention_days < 1:
            raise ValueError("RECORD_RETENTION_DAYS must be positive")


# Create global settings instance
settings = Settings()
settings.validate()
