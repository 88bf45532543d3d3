from __future__ import annotations

from rich.console import Console

from proxy_core_manager.core.lib.models import ProcessState, TrafficRate, TrafficSample
from proxy_core_manager.core.utils import format_bytes, format_delay, format_rate
from proxy_core_manager.core.utils.prompt import CoreUI


def _render(ui: CoreUI) -> str:
    console = Console(width=100, record=True)
    console.print(ui._generate_display())
    return console.export_text()


def test_format_helpers() -> None:
    assert format_bytes(512) == "512.0 B"
    assert format_bytes(1536) == "1.5 KB"
    assert format_bytes(-2048) == "-2.0 KB"
    assert format_rate(3 * 1024 * 1024) == "3.0 MB/s"
    assert format_delay(120) == "120 ms"
    assert format_delay(-1) == "timeout"


def test_panel_reflects_latest_events() -> None:
    ui = CoreUI("http://127.0.0.1:9090", log_lines=2, memory_source=lambda: 50 * 1024 * 1024)

    ui.on_state_changed(ProcessState.RUNNING)
    ui.on_traffic(TrafficSample(2048, 4096, 10.0), TrafficRate(upload_bps=1024, download_bps=2048))
    for line in ("first", "second", "third"):
        ui.on_log(line)
    ui.on_error("Core exited unexpectedly (exit code: 1)")

    text = _render(ui)

    assert "http://127.0.0.1:9090" in text
    assert "connected" in text
    assert "1.0 KB/s" in text
    assert "2.0 KB/s" in text
    assert "50.0 MB" in text
    assert "exit code: 1" in text
    assert "first" not in text
    assert "second" in text and "third" in text


def test_panel_before_any_traffic() -> None:
    ui = CoreUI("http://127.0.0.1:9090")

    text = _render(ui)

    assert "disconnected" in text
    assert "Total" not in text
    assert "Core Memory" not in text
