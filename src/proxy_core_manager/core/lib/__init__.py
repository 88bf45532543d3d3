"""Core process and control-plane library components."""

from .control_plane import DELAY_UNAVAILABLE, ControlPlaneClient
from .events import EventDispatcher, EventSink
from .log_export import export_logs, read_log_tail
from .models import ProcessState, TrafficRate, TrafficSample
from .supervisor import CoreSupervisor, ManagedProcess
from .traffic_monitor import TrafficMonitor, compute_rate

__all__ = [
    "compute_rate",
    "ControlPlaneClient",
    "CoreSupervisor",
    "DELAY_UNAVAILABLE",
    "EventDispatcher",
    "EventSink",
    "export_logs",
    "ManagedProcess",
    "ProcessState",
    "read_log_tail",
    "TrafficMonitor",
    "TrafficRate",
    "TrafficSample",
]
