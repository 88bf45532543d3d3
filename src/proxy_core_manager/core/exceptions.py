"""Custom exceptions for the proxy core manager.

This module defines the exceptions used throughout the supervisor and the
control-plane client. They separate:
- Failures that make ``start`` impossible (missing binary, early exit)
- Control-plane failures (unreachable API, rejected requests)

Only the start failures reach callers. Control-plane errors are raised inside
the client and turned into sentinel return values at its public surface.

Example:
    try:
        supervisor.start(config_path)
    except ProcessExitedEarlyError as e:
        console.print(f"[red]Core died during startup (exit code {e.exit_code})")
"""


class ProxyCoreError(Exception):
    """Base exception for proxy core errors."""


class BinaryUnavailableError(ProxyCoreError):
    """Raised when the core executable is missing or cannot be executed."""


class ProcessExitedEarlyError(ProxyCoreError):
    """Raised when the core exits before the startup grace period elapses."""

    def __init__(self, exit_code: int) -> None:
        super().__init__(f"Core failed to start (exit code: {exit_code})")
        self.exit_code = exit_code


class ControlPlaneError(ProxyCoreError):
    """Base exception for control-plane API failures."""


class ControlPlaneUnreachableError(ControlPlaneError):
    """Raised on connection errors and timeouts against the control-plane API."""


class ControlPlaneRejectedError(ControlPlaneError):
    """Raised when the control-plane API answers with a non-success status."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
