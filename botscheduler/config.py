"""Configuration for the job scheduler."""
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

load_dotenv(override=True)


@dataclass
class Settings:
    """Scheduler settings."""

    # Storage
    data_dir: Path = field(default_factory=lambda: Path.home() / ".botscheduler" / "data")
    db_name: str = "jobs.db"

    # Ticks
    poll_interval_seconds: int = 60
    backfill_interval_seconds: int = 3600

    # Timing
    default_timezone: str = "UTC"
    overdue_delay_seconds: float = 1.0  # one-shot reminders missed while down fire this late

    # Command replayed for queued watch requests
    queue_command: str = "market"

    # Logging
    log_level: str = "INFO"
    debug: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from environment variables."""
        debug = os.getenv("DEBUG", "").lower() in ("1", "true")
        return cls(
            data_dir=Path(os.getenv(
                "BOTSCHEDULER_DATA_DIR", str(Path.home() / ".botscheduler" / "data")
            )).expanduser(),
            db_name=os.getenv("BOTSCHEDULER_DB_NAME", "jobs.db"),
            poll_interval_seconds=int(os.getenv("BOTSCHEDULER_POLL_INTERVAL", "60")),
            backfill_interval_seconds=int(os.getenv("BOTSCHEDULER_BACKFILL_INTERVAL", "3600")),
            default_timezone=os.getenv("BOTSCHEDULER_TIMEZONE", "UTC"),
            overdue_delay_seconds=float(os.getenv("BOTSCHEDULER_OVERDUE_DELAY", "1")),
            queue_command=os.getenv("BOTSCHEDULER_QUEUE_COMMAND", "market"),
            log_level=os.getenv("LOG_LEVEL", "DEBUG" if debug else "INFO").upper(),
            debug=debug,
        )


def setup_logging(config: Settings | None = None) -> None:
    """Replace loguru's default sink with one at the configured level."""
    config = config or settings
    logger.remove()
    logger.add(
        sys.stderr,
        level=config.log_level,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
            "{extra[module]} - <level>{message}</level>"
        ),
        backtrace=config.debug,
        diagnose=config.debug,
    )
    logger.configure(extra={"module": "botscheduler"})


# Global settings instance
settings = Settings.from_env()
