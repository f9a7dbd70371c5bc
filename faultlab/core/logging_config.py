"""
Centralized Logging Configuration for faultlab

All Python logging from sessions, retention jobs and collaborators goes to:

1. {FAULTLAB_LOG_DIR}/system.log - rotating file (default logs/faultlab)
2. stdout - console (optional)

Usage:
    from faultlab.core.logging_config import setup_logging

    # Call once at process startup
    setup_logging()

Modules keep their own ``logger = logging.getLogger(__name__)``.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from faultlab.core.config import get_settings

if TYPE_CHECKING:
    from faultlab.core.models import CleanupResult

# =============================================================================
# Configuration
# =============================================================================

SYSTEM_LOG_NAME = "system.log"
MAX_LOG_SIZE = 10 * 1024 * 1024  # 10 MB per file
BACKUP_COUNT = 5

LOG_FORMAT = "%(asctime)s | %(levelname)-5s | %(name)-30s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

CONSOLE_FORMAT = "%(asctime)s | %(levelname)-5s | %(name)-20s | %(message)s"
CONSOLE_DATE_FORMAT = "%H:%M:%S"

QUIET_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "urllib3", "asyncio")

# =============================================================================
# Global State
# =============================================================================

_logging_configured = False
_file_handler: Optional[RotatingFileHandler] = None


# =============================================================================
# Setup Functions
# =============================================================================


def setup_logging(
    level: Optional[str] = None,
    log_to_console: bool = True,
    log_to_file: bool = True,
    service_name: str = "faultlab",
    force: bool = False,
) -> None:
    """
    Configure unified logging for faultlab.

    Should be called ONCE at process start; later calls are no-ops unless
    ``force`` is set.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to the LOG_LEVEL setting.
        log_to_console: Whether to also log to stdout (default True)
        log_to_file: Whether to log to system.log under FAULTLAB_LOG_DIR (default True)
        service_name: Service identifier for the startup marker
        force: Replace an earlier configuration
    """
    global _logging_configured, _file_handler

    if _logging_configured and not force:
        return

    settings = get_settings()
    if level is None:
        level = settings.log_level
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove any existing handlers (prevents duplicates)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        if handler is _file_handler:
            handler.close()
    _file_handler = None

    # === File Handler (system.log) ===
    if log_to_file:
        log_dir = Path(settings.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        _file_handler = RotatingFileHandler(
            log_dir / SYSTEM_LOG_NAME,
            maxBytes=MAX_LOG_SIZE,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        _file_handler.setLevel(log_level)
        _file_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
        root_logger.addHandler(_file_handler)

    # === Console Handler (stdout) ===
    if log_to_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, CONSOLE_DATE_FORMAT))
        root_logger.addHandler(console_handler)

    # === Reduce noise from chatty libraries ===
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _logging_configured = True

    logger = logging.getLogger(service_name)
    logger.info("=" * 60)
    logger.info(f"LOGGING INITIALIZED - {service_name.upper()}")
    if _file_handler is not None:
        logger.info(f"Log file: {get_system_log_path()}")
    logger.info(f"Log level: {level.upper()}")
    logger.info("=" * 60)


def get_system_log_path() -> Path:
    """Path of the active system log file, or where it would go once configured."""
    if _file_handler is not None:
        return Path(_file_handler.baseFilename)
    return Path(get_settings().log_dir).absolute() / SYSTEM_LOG_NAME

# =============================================================================
# Convenience Functions
# =============================================================================


def log_phase(logger: logging.Logger, session_id: str, phase: str, status: str, elapsed_ms: float = None):
    """Log a session phase transition with standard format."""
    elapsed = f" | elapsed={elapsed_ms:.0f}ms" if elapsed_ms else ""
    logger.info(f"[{session_id}] PHASE | {phase} | {status}{elapsed}")


def log_flag_call(logger: logging.Logger, session_id: str, flag_name: str, action: str, status: str = "calling"):
    """Log a flag backend call with standard format."""
    logger.info(f"[{session_id}] FLAG | {flag_name} | {action} | {status}")


def log_cleanup(logger: logging.Logger, job: str, result: "CleanupResult"):
    """Log the outcome of a cleanup batch with standard format."""
    level = logging.WARNING if result.errors else logging.INFO
    logger.log(
        level,
        f"[Retention] {job} | deleted={result.deleted_objects} | "
        f"freed={result.freed_space_bytes}B | errors={len(result.errors)} | "
        f"elapsed={result.duration_ms}ms",
    )
