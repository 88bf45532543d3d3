"""Runtime settings for the core supervisor."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Final

APP_DIR: Final = Path.home() / ".proxy-core-manager"

# Timing defaults, seconds
DEFAULT_GRACE_PERIOD: Final = 0.5
DEFAULT_STOP_TIMEOUT: Final = 3.0
DEFAULT_POLL_INTERVAL: Final = 1.0
DEFAULT_RETRY_INTERVAL: Final = 5.0
DEFAULT_CONNECT_TIMEOUT: Final = 5.0
DEFAULT_READ_TIMEOUT: Final = 10.0
DEFAULT_JOIN_TIMEOUT: Final = 15.0


@dataclass
class CoreSettings:
    """Where the core lives and how the supervisor paces itself.

    Attributes:
        binary_path: Path to the proxy-core executable
        data_dir: Private working directory handed to the core (``-d``, ``HOME``)
        grace_period: How long the core must survive after launch to count as started
        stop_timeout: How long to wait for a graceful exit before force-killing
        poll_interval: Traffic poll interval after a successful sample
        retry_interval: Traffic poll interval after a failed sample
        connect_timeout: Control-plane connect timeout
        read_timeout: Control-plane read/write timeout
        join_timeout: Upper bound for joining background tasks on stop
    """

    binary_path: Path = field(default_factory=lambda: APP_DIR / "core" / "mihomo")
    data_dir: Path = field(default_factory=lambda: APP_DIR / "core")
    grace_period: float = DEFAULT_GRACE_PERIOD
    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    retry_interval: float = DEFAULT_RETRY_INTERVAL
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    read_timeout: float = DEFAULT_READ_TIMEOUT
    join_timeout: float = DEFAULT_JOIN_TIMEOUT

    def __post_init__(self) -> None:
        self.binary_path = Path(self.binary_path).expanduser()
        self.data_dir = Path(self.data_dir).expanduser()

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def core_log_file(self) -> Path:
        """Append-only file receiving the core's own output."""
        return self.log_dir / "core.log"

    def ensure_dirs(self) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)
