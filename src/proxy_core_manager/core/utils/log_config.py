"""Logging configuration for the proxy core manager.

This module provides centralized logging configuration using Loguru.
Application records go to stderr and to a rotating file under the user's
home directory. Records bound with ``core_output=True`` carry the core
process's own output and go only to the core log file inside its data
directory, which is what the log export reads.
"""

import sys
from pathlib import Path

from loguru import logger

from proxy_core_manager.core.settings import APP_DIR

LOG_DIR = APP_DIR / "logs"


def _is_core_output(record) -> bool:
    return bool(record["extra"].get("core_output"))


def _is_app_record(record) -> bool:
    return not _is_core_output(record)


def configure_logging(level: str = "INFO", core_log_file: Path | None = None) -> None:
    """Install the console, application file and core output sinks.

    Args:
        level: Minimum level for the console sink
        core_log_file: File receiving the core's output, None to skip it
    """
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    logger.remove()

    logger.add(
        sys.stderr,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        ),
        level=level,
        filter=_is_app_record,
        backtrace=True,
        diagnose=True,
    )

    # Add file handler with rotation
    logger.add(
        LOG_DIR / "manager.log",
        rotation="10 MB",
        retention="1 week",
        compression="zip",
        format=(
            "{time:YYYY-MM-DD HH:mm:ss} | "
            "{level: <8} | "
            "{name}:{function}:{line} - "
            "{message}"
        ),
        level="DEBUG",
        filter=_is_app_record,
        backtrace=True,
        diagnose=True,
    )

    if core_log_file is not None:
        core_log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            core_log_file,
            rotation="10 MB",
            format="{time:YYYY-MM-DD HH:mm:ss} {message}",
            level="DEBUG",
            filter=_is_core_output,
            enqueue=True,
        )


__all__ = ["configure_logging", "LOG_DIR", "logger"]
