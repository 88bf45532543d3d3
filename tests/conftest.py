from __future__ import annotations

import stat
import threading
import time
from collections.abc import Callable
from pathlib import Path

import pytest

from proxy_core_manager.core.lib.models import ProcessState, TrafficRate, TrafficSample


class RecordingSink:
    """Observer that keeps every event it receives."""

    def __init__(self) -> None:
        self.states: list[ProcessState] = []
        self.traffic: list[tuple[TrafficSample, TrafficRate]] = []
        self.logs: list[str] = []
        self.errors: list[str] = []

    def on_state_changed(self, state: ProcessState) -> None:
        self.states.append(state)

    def on_traffic(self, sample: TrafficSample, rate: TrafficRate) -> None:
        self.traffic.append((sample, rate))

    def on_log(self, line: str) -> None:
        self.logs.append(line)

    def on_error(self, message: str) -> None:
        self.errors.append(message)


class CountingEvent(threading.Event):
    """Cancel event that records wait timeouts and sets itself after N waits."""

    def __init__(self, stop_after: int) -> None:
        super().__init__()
        self.stop_after = stop_after
        self.waits: list[float | None] = []

    def wait(self, timeout: float | None = None) -> bool:
        self.waits.append(timeout)
        if len(self.waits) >= self.stop_after:
            self.set()
        return self.is_set()


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def make_core(tmp_path: Path) -> Callable[[str], Path]:
    """Write a fake core executable with the given shell body."""

    def _make(body: str, name: str = "fake-core", executable: bool = True) -> Path:
        path = tmp_path / name
        path.write_text("#!/bin/sh\n" + body)
        if executable:
            path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _make


@pytest.fixture
def core_config(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(
        "mixed-port: 7890\n"
        "external-controller: 127.0.0.1:9097\n"
        'secret: "abc123"\n'
        "mode: rule\n"
    )
    return path
