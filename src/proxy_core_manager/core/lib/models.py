"""Value types shared by the supervisor, its background tasks and observers."""

from dataclasses import dataclass
from enum import Enum


class ProcessState(Enum):
    """Lifecycle state of the supervised core process."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"

    @property
    def label(self) -> str:
        """Connection label shown to users."""
        return _LABELS[self]


_LABELS = {
    ProcessState.STOPPED: "disconnected",
    ProcessState.STARTING: "connecting",
    ProcessState.RUNNING: "connected",
    ProcessState.STOPPING: "disconnecting",
    ProcessState.FAILED: "failed",
}


@dataclass(frozen=True)
class TrafficSample:
    """Cumulative byte counters reported by the core at one point in time.

    Attributes:
        upload_bytes: Total bytes sent
        download_bytes: Total bytes received
        observed_at: Monotonic timestamp of the observation, in seconds
    """

    upload_bytes: int
    download_bytes: int
    observed_at: float


@dataclass(frozen=True)
class TrafficRate:
    """Throughput derived from two consecutive samples, in bytes per second."""

    upload_bps: int
    download_bps: int
