# =============================================================================
# hanyu_sync/logging/config.py
# Logging Configuration for the Offline Sync Core
# =============================================================================

import logging
import sys
import time
from pathlib import Path
from datetime import datetime
from typing import Optional


# Log format
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Log directory
LOG_DIR = Path("logs")

# Chatty third-party loggers (the Supabase stack talks through httpx)
NOISY_LOGGERS = ("urllib3", "httpx", "httpcore", "hpack", "supabase", "postgrest", "gotrue")


def setup_logging(
    level: int = logging.INFO,
    log_to_file: bool = False,
    log_filename: Optional[str] = None,
) -> None:
    """
    Configure logging for the host application.

    Args:
        level: Logging level (default: INFO)
        log_to_file: Whether to also log to a file under logs/
        log_filename: Custom log filename (default: sync_YYYY-MM-DD.log)
    """
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_to_file:
        LOG_DIR.mkdir(exist_ok=True)
        if log_filename is None:
            log_filename = f"sync_{datetime.now().strftime('%Y-%m-%d')}.log"
        handlers.append(logging.FileHandler(LOG_DIR / log_filename))

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("hanyu_sync").info("Logging initialized")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the given name.

    Usage:
        from hanyu_sync.logging import get_logger
        logger = get_logger(__name__)
        logger.info("Draining vocab queue")
    """
    return logging.getLogger(name)


class LogContext:
    """
    Context manager that logs start, completion and duration of an operation.

    Usage:
        with LogContext(logger, "Refreshing learned vocab mirror"):
            tracker.update_local_learned_cache()
    """

    def __init__(self, logger: logging.Logger, operation: str, level: int = logging.DEBUG):
        self.logger = logger
        self.operation = operation
        self.level = level
        self.start_time: Optional[float] = None

    def __enter__(self):
        self.start_time = time.monotonic()
        self.logger.log(self.level, f"{self.operation}... started")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        elapsed = time.monotonic() - self.start_time

        if exc_type is None:
            self.logger.log(self.level, f"{self.operation}... completed ({elapsed:.2f}s)")
        else:
            self.logger.warning(f"{self.operation}... failed ({elapsed:.2f}s): {exc_val}")

        return False
