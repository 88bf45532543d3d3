"""Allow ``python -m proxy_core_manager``."""

from proxy_core_manager.cmd.cli import app

app()
