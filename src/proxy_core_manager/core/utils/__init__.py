"""Utility functions and helpers."""

from proxy_core_manager.core.utils.prompt import CoreUI
from proxy_core_manager.core.utils.utils import format_bytes, format_delay, format_rate

__all__ = ["CoreUI", "format_bytes", "format_delay", "format_rate"]
