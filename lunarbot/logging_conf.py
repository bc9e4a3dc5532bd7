"""Logging setup."""
import logging
import sys

from lunarbot.config import config

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# Chatty third-party loggers
QUIET_LOGGERS = ("httpx", "httpcore", "apscheduler", "asyncio")


def setup_logging(level: str | None = None) -> None:
    """Configure root logging once for CLI and API entry points."""
    level_name = (level or config.LOG_LEVEL).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stdout,
        force=True,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
