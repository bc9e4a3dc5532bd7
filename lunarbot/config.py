"""Configuration management from environment variables."""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env file
load_dotenv()

# Project root
PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(PROJECT_ROOT / "data")))
SPOOL_DIR = DATA_DIR / "spool"
DB_PATH = Path(os.getenv("DB_PATH", str(DATA_DIR / "lunarbot.db")))

# Ensure directories exist
DATA_DIR.mkdir(parents=True, exist_ok=True)
SPOOL_DIR.mkdir(exist_ok=True)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration."""

    # Worker pools
    TASK_CONCURRENCY: int = int(os.getenv("TASK_CONCURRENCY", "5"))
    MONITOR_CONCURRENCY: int = int(os.getenv("MONITOR_CONCURRENCY", "3"))
    TASK_ATTEMPTS: int = int(os.getenv("TASK_ATTEMPTS", "3"))
    TASK_BACKOFF_SECONDS: float = float(os.getenv("TASK_BACKOFF_SECONDS", "2"))

    # Monitoring
    MONITOR_INTERVAL_MINUTES: float = float(os.getenv("MONITOR_INTERVAL_MINUTES", "5"))
    SCAN_INTERVAL_MINUTES: float = float(os.getenv("SCAN_INTERVAL_MINUTES", "30"))
    SCAN_BATCH_SIZE: int = int(os.getenv("SCAN_BATCH_SIZE", "10"))
    SCAN_BATCH_DELAY_SECONDS: float = float(os.getenv("SCAN_BATCH_DELAY_SECONDS", "5"))
    PRICE_CHANGE_THRESHOLD: float = float(os.getenv("PRICE_CHANGE_THRESHOLD", "5.0"))
    AUTO_PURCHASE_PRIORITY: int = int(os.getenv("AUTO_PURCHASE_PRIORITY", "10"))
    SCRAPE_RATE_PER_DOMAIN: float = float(os.getenv("SCRAPE_RATE_PER_DOMAIN", "0.5"))

    # Bots
    BOT_HEADLESS: bool = _env_bool("BOT_HEADLESS", True)
    BOT_TIMEOUT_MS: int = int(os.getenv("BOT_TIMEOUT_MS", "30000"))
    BOT_RETRY_ATTEMPTS: int = int(os.getenv("BOT_RETRY_ATTEMPTS", "3"))
    BOT_ACTION_DELAY_MS: int = int(os.getenv("BOT_ACTION_DELAY_MS", "1000"))
    BOT_HEALTH_WINDOW_SECONDS: float = float(os.getenv("BOT_HEALTH_WINDOW_SECONDS", "300"))
    SUPERVISOR_INTERVAL_SECONDS: float = float(os.getenv("SUPERVISOR_INTERVAL_SECONDS", "60"))

    # Credential vault
    ENCRYPTION_KEY: str | None = os.getenv("ENCRYPTION_KEY")
    ENCRYPTION_SALT: str | None = os.getenv("ENCRYPTION_SALT")

    # Notifications
    NOTIFY_WEBHOOK_URL: str | None = os.getenv("NOTIFY_WEBHOOK_URL")

    # Supabase mirror (optional)
    SUPABASE_URL: str | None = os.getenv("SUPABASE_URL")
    SUPABASE_SERVICE_ROLE: str | None = os.getenv("SUPABASE_SERVICE_ROLE")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # API Security
    API_KEY: str | None = os.getenv("API_KEY")

    @classmethod
    def validate(cls) -> None:
        """Validate required configuration."""
        errors = []
        if not cls.ENCRYPTION_KEY:
            errors.append("ENCRYPTION_KEY is required")
        if cls.TASK_CONCURRENCY < 1:
            errors.append("TASK_CONCURRENCY must be >= 1")
        if cls.MONITOR_CONCURRENCY < 1:
            errors.append("MONITOR_CONCURRENCY must be >= 1")
        if cls.TASK_ATTEMPTS < 1:
            errors.append("TASK_ATTEMPTS must be >= 1")
        if bool(cls.SUPABASE_URL) != bool(cls.SUPABASE_SERVICE_ROLE):
            errors.append("SUPABASE_URL and SUPABASE_SERVICE_ROLE must be set together")
        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")


config = Config()
