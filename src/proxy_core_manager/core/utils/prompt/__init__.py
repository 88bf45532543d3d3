"""Prompt and UI utilities."""

from proxy_core_manager.core.utils.prompt.core_ui import CoreUI, create_core_ui
from proxy_core_manager.core.utils.prompt.prompt import PromptHandler, console

__all__ = ["console", "CoreUI", "create_core_ui", "PromptHandler"]
