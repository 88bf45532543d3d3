"""Export of the core log file's most recent output."""

import time
from pathlib import Path
from typing import Final

from loguru import logger

DEFAULT_TAIL_BYTES: Final = 100_000
NO_LOGS_PLACEHOLDER: Final = "No logs available"


def read_log_tail(log_file: Path, max_bytes: int = DEFAULT_TAIL_BYTES) -> str:
    """Return at most the last ``max_bytes`` of ``log_file``.

    Args:
        log_file: Core log file
        max_bytes: Size bound of the returned tail

    Returns:
        str: The tail, or a placeholder if the file does not exist
    """
    if not log_file.exists():
        return NO_LOGS_PLACEHOLDER
    with log_file.open("rb") as f:
        size = f.seek(0, 2)
        f.seek(max(0, size - max_bytes))
        data = f.read()
    return data.decode("utf-8", errors="replace")


def export_logs(
    log_file: Path, dest_dir: Path, max_bytes: int = DEFAULT_TAIL_BYTES
) -> Path | None:
    """Copy the tail of ``log_file`` into a timestamped file under ``dest_dir``.

    Returns:
        Path | None: The exported file, or None if the export failed
    """
    try:
        logs = read_log_tail(log_file, max_bytes)
        dest_dir.mkdir(parents=True, exist_ok=True)
        export_path = dest_dir / f"core_logs_{int(time.time())}.txt"
        export_path.write_text(logs, encoding="utf-8")
    except OSError as e:
        logger.error(f"Failed to export logs: {e}")
        return None
    logger.info(f"Logs exported to {export_path}")
    return export_path
