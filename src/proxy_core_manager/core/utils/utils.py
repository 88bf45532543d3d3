"""Common utility functions."""

from typing import Final

# Size constants
BYTES_PER_KB: Final = 1024
BYTES_PER_MB: Final = BYTES_PER_KB * 1024
BYTES_PER_GB: Final = BYTES_PER_MB * 1024
BYTES_PER_TB: Final = BYTES_PER_GB * 1024

# Size units
SIZE_UNITS: Final = [
    ("B", 1),
    ("KB", BYTES_PER_KB),
    ("MB", BYTES_PER_MB),
    ("GB", BYTES_PER_GB),
    ("TB", BYTES_PER_TB),
]


def format_bytes(bytes_: float) -> str:
    """Format bytes into human readable format.

    Negative values (counters reset by a config reload) keep their sign.

    Args:
        bytes_: Number of bytes to format

    Returns:
        str: Formatted string with appropriate unit
    """
    sign = "-" if bytes_ < 0 else ""
    magnitude = abs(bytes_)
    for unit, divisor in SIZE_UNITS:
        if magnitude < divisor * BYTES_PER_KB:
            return f"{sign}{magnitude / divisor:.1f} {unit}"
    return f"{sign}{magnitude / BYTES_PER_TB:.1f} TB"


def format_rate(bytes_per_second: float) -> str:
    """Format a throughput value, e.g. ``1.5 MB/s``."""
    return f"{format_bytes(bytes_per_second)}/s"


def format_delay(delay_ms: int) -> str:
    """Format a delay probe result; negative means unreachable."""
    return "timeout" if delay_ms < 0 else f"{delay_ms} ms"
