"""Live terminal panel for a supervised proxy core.

``CoreUI`` is an event sink: the supervisor pushes state, traffic, log and
error events into it, and a render thread redraws a Rich panel from the
latest values. Callbacks only store values under a lock, so they never block
the supervisor's background loops.
"""

import threading
import time
from collections import deque
from collections.abc import Callable

from rich.panel import Panel
from rich.spinner import Spinner
from rich.table import Table
from rich.text import Text

from proxy_core_manager.core.lib.models import ProcessState, TrafficRate, TrafficSample
from proxy_core_manager.core.utils.utils import format_bytes, format_rate

from .prompt import PromptHandler

STATE_STYLES = {
    ProcessState.STOPPED: "dim",
    ProcessState.STARTING: "yellow",
    ProcessState.RUNNING: "green",
    ProcessState.STOPPING: "yellow",
    ProcessState.FAILED: "bold red",
}


class CoreUI(PromptHandler):
    """Event sink rendering the core's status as a live panel."""

    def __init__(
        self,
        controller_url: str,
        log_lines: int = 8,
        memory_source: Callable[[], int | None] | None = None,
    ) -> None:
        """Initialize the panel.

        Args:
            controller_url: Control-plane address shown in the title
            log_lines: How many recent core log lines to keep on screen
            memory_source: Returns the core's resident memory in bytes
        """
        super().__init__()
        self.controller_url = controller_url
        self.running = True
        self._memory_source = memory_source
        self._lock = threading.Lock()
        self._start_time = time.monotonic()
        self._refresh_rate = 0.5
        self._spinner = Spinner("dots", text="")

        self.state = ProcessState.STOPPED
        self.last_sample: TrafficSample | None = None
        self.last_rate = TrafficRate(upload_bps=0, download_bps=0)
        self.recent_logs: deque[str] = deque(maxlen=log_lines)
        self.last_error: str | None = None

    def on_state_changed(self, state: ProcessState) -> None:
        with self._lock:
            self.state = state

    def on_traffic(self, sample: TrafficSample, rate: TrafficRate) -> None:
        with self._lock:
            self.last_sample = sample
            self.last_rate = rate

    def on_log(self, line: str) -> None:
        with self._lock:
            self.recent_logs.append(line)

    def on_error(self, message: str) -> None:
        with self._lock:
            self.last_error = message

    def _generate_table(self) -> Table:
        """Generate statistics table."""
        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column("Property", style="cyan", no_wrap=True)
        table.add_column("Value", style="green")

        with self._lock:
            state = self.state
            sample = self.last_sample
            rate = self.last_rate
            logs = list(self.recent_logs)
            error = self.last_error

        elapsed = time.monotonic() - self._start_time
        spinner_text = self._spinner.render(elapsed) if state is ProcessState.RUNNING else ""

        table.add_row("State", Text(state.label, style=STATE_STYLES[state]))
        table.add_row("Upload", f"{spinner_text} {format_rate(rate.upload_bps)}")
        table.add_row("Download", f"{spinner_text} {format_rate(rate.download_bps)}")
        if sample is not None:
            table.add_row(
                "Total",
                f"up {format_bytes(sample.upload_bytes)} / "
                f"down {format_bytes(sample.download_bytes)}",
            )
        if self._memory_source is not None:
            memory = self._memory_source()
            if memory is not None:
                table.add_row("Core Memory", format_bytes(memory))
        if error:
            table.add_row("Last Error", Text(error, style="red"))
        if logs:
            table.add_row("Core Log", Text("\n".join(logs), style="white"))
        return table

    def _generate_display(self) -> Panel:
        """Generate the main display panel."""
        title = Text(f"Proxy Core: {self.controller_url}", style="bold cyan")
        return Panel(
            self._generate_table(),
            title=title,
            subtitle="Press Ctrl+C to stop",
            border_style="blue",
            padding=(1, 2),
        )

    def run(self) -> None:
        """Redraw the panel until ``running`` is cleared."""
        with self.create_live_display(self._generate_display(), refresh_per_second=4) as live:
            while self.running:
                live.update(self._generate_display(), refresh=True)
                time.sleep(self._refresh_rate)
            live.update(self._generate_display(), refresh=True)


def create_core_ui(ui: CoreUI) -> threading.Thread:
    """Create and return UI thread."""
    return threading.Thread(target=ui.run, name="core-ui", daemon=True)
