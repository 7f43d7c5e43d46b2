import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

from .config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def configure_logging(level: Optional[str] = None, log_path: Optional[str] = None) -> None:
    """Console plus rotating file output on the root logger. Safe to call twice."""
    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())

    if getattr(root, "_powerguard_configured", False):
        return

    fmt = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(fmt)
    root.addHandler(console)

    # Background ticks run for days
    rotating = RotatingFileHandler(
        log_path or settings.log_path,
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backups,
    )
    rotating.setFormatter(fmt)
    root.addHandler(rotating)

    for noisy in ("httpx", "httpcore", "aiosqlite"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    root._powerguard_configured = True
