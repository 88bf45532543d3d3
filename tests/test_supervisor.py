from __future__ import annotations

import sys
import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path

import httpx
import pytest
from conftest import RecordingSink, wait_for

from proxy_core_manager.core.controller_config import ControllerConfig
from proxy_core_manager.core.exceptions import BinaryUnavailableError, ProcessExitedEarlyError
from proxy_core_manager.core.lib.control_plane import ControlPlaneClient
from proxy_core_manager.core.lib.models import ProcessState
from proxy_core_manager.core.lib.supervisor import CoreSupervisor
from proxy_core_manager.core.settings import CoreSettings

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="fake cores are POSIX shell scripts")

SERVING_CORE = """\
echo "core booting"
echo ""
echo "   "
echo "HOME=$HOME"
trap 'echo "terminating"; exit 0' TERM
while true; do sleep 0.05; done
"""

STUBBORN_CORE = """\
trap '' TERM
echo "ignoring SIGTERM"
while true; do sleep 0.05; done
"""

CRASHING_CORE = """\
echo "parse config error: bad proxy"
exit 3
"""

DYING_CORE = """\
echo "up for a moment"
sleep 0.6
exit 7
"""

ORPHANING_CORE = """\
echo "fatal: bad config"
sleep 4 &
exit 3
"""


class FakeControlPlane:
    """Mock control-plane API with growing traffic counters."""

    def __init__(self) -> None:
        self.polls = 0
        self.reject_reload = False
        self.requests: list[httpx.Request] = []
        self._lock = threading.Lock()

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
            if request.url.path == "/traffic":
                self.polls += 1
                return httpx.Response(
                    200, text=f'{{"up": {self.polls * 1000}, "down": {self.polls * 4000}}}\n'
                )
        if request.url.path == "/configs":
            if self.reject_reload:
                return httpx.Response(400, json={"message": "invalid config"})
            return httpx.Response(204)
        return httpx.Response(404)

    def factory(self, controller: ControllerConfig) -> ControlPlaneClient:
        return ControlPlaneClient(controller, transport=httpx.MockTransport(self.handler))


@pytest.fixture
def control_plane() -> FakeControlPlane:
    return FakeControlPlane()


@pytest.fixture
def supervisor_for(
    tmp_path: Path, sink: RecordingSink, control_plane: FakeControlPlane
) -> Iterator[Callable[..., CoreSupervisor]]:
    created: list[CoreSupervisor] = []

    def _build(binary: Path, **overrides: float) -> CoreSupervisor:
        settings = CoreSettings(
            binary_path=binary,
            data_dir=tmp_path / "data",
            grace_period=overrides.get("grace_period", 0.2),
            stop_timeout=overrides.get("stop_timeout", 3.0),
            poll_interval=0.05,
            retry_interval=0.2,
            join_timeout=5.0,
        )
        supervisor = CoreSupervisor(settings, client_factory=control_plane.factory)
        supervisor.set_observer(sink)
        created.append(supervisor)
        return supervisor

    yield _build
    for supervisor in created:
        supervisor.close()


def _session_threads(pid: int) -> list[str]:
    return [t.name for t in threading.enumerate() if t.name.startswith(f"core-{pid}-")]


def test_start_and_stop_lifecycle(
    make_core, core_config: Path, supervisor_for, sink: RecordingSink, tmp_path: Path
) -> None:
    supervisor = supervisor_for(make_core(SERVING_CORE))

    assert supervisor.start(core_config) is True
    assert supervisor.state is ProcessState.RUNNING
    assert supervisor.is_running()
    assert supervisor.config_path == core_config.resolve()
    assert supervisor.controller == ControllerConfig("127.0.0.1", 9097, "abc123")
    pid = supervisor.process.pid
    assert wait_for(lambda: "core booting" in sink.logs)

    supervisor.stop()

    assert supervisor.state is ProcessState.STOPPED
    assert supervisor.process is None
    assert supervisor.config_path is None
    assert not supervisor.is_running()
    assert _session_threads(pid) == []
    assert sink.states == [
        ProcessState.STARTING,
        ProcessState.RUNNING,
        ProcessState.STOPPING,
        ProcessState.STOPPED,
    ]
    assert "core booting" in sink.logs
    assert f"HOME={tmp_path / 'data'}" in sink.logs
    assert all(line.strip() for line in sink.logs)


def test_start_twice_does_not_spawn_second_process(
    make_core, core_config: Path, supervisor_for, sink: RecordingSink
) -> None:
    supervisor = supervisor_for(make_core(SERVING_CORE))

    assert supervisor.start(core_config) is True
    pid = supervisor.process.pid
    assert supervisor.start(core_config) is True

    assert supervisor.process.pid == pid
    assert sink.states.count(ProcessState.RUNNING) == 1


def test_stop_force_kills_process_ignoring_sigterm(
    make_core, core_config: Path, supervisor_for, sink: RecordingSink
) -> None:
    supervisor = supervisor_for(make_core(STUBBORN_CORE), stop_timeout=0.3)
    supervisor.start(core_config)
    handle = supervisor.process.handle

    supervisor.stop()

    assert handle.poll() is not None
    assert supervisor.state is ProcessState.STOPPED
    assert supervisor.process is None
    assert sink.states[-1] is ProcessState.STOPPED


def test_stop_without_process_is_a_no_op(make_core, supervisor_for, sink: RecordingSink) -> None:
    supervisor = supervisor_for(make_core(SERVING_CORE))

    supervisor.stop()

    assert supervisor.state is ProcessState.STOPPED
    assert sink.states == []


def test_missing_binary_raises_and_stays_stopped(
    tmp_path: Path, core_config: Path, supervisor_for, sink: RecordingSink
) -> None:
    supervisor = supervisor_for(tmp_path / "nowhere" / "mihomo")

    with pytest.raises(BinaryUnavailableError):
        supervisor.start(core_config)

    assert supervisor.state is ProcessState.STOPPED
    assert sink.states == []
    assert sink.errors and "not found" in sink.errors[0]


def test_non_executable_binary_raises(
    make_core, core_config: Path, supervisor_for, sink: RecordingSink
) -> None:
    supervisor = supervisor_for(make_core(SERVING_CORE, executable=False))

    with pytest.raises(BinaryUnavailableError):
        supervisor.start(core_config)

    assert supervisor.state is ProcessState.STOPPED
    assert "not executable" in sink.errors[0]


def test_early_exit_fails_start_with_exit_code(
    make_core, core_config: Path, supervisor_for, sink: RecordingSink
) -> None:
    supervisor = supervisor_for(make_core(CRASHING_CORE))

    with pytest.raises(ProcessExitedEarlyError) as exc_info:
        supervisor.start(core_config)

    assert exc_info.value.exit_code == 3
    assert supervisor.state is ProcessState.FAILED
    assert supervisor.process is None
    assert sink.states == [ProcessState.STARTING, ProcessState.FAILED]
    assert sink.errors == ["Core failed to start (exit code: 3)"]
    assert sink.logs == ["parse config error: bad proxy"]


def test_unexpected_exit_while_running_becomes_failed(
    make_core, core_config: Path, supervisor_for, sink: RecordingSink
) -> None:
    supervisor = supervisor_for(make_core(DYING_CORE))
    supervisor.start(core_config)

    assert wait_for(lambda: supervisor.state is ProcessState.FAILED)
    assert wait_for(lambda: bool(sink.errors))
    assert sink.errors == ["Core exited unexpectedly (exit code: 7)"]
    assert not supervisor.is_running()

    supervisor.stop()

    assert supervisor.state is ProcessState.STOPPED
    assert supervisor.process is None


def test_restart_after_failure(
    make_core, core_config: Path, supervisor_for, sink: RecordingSink
) -> None:
    supervisor = supervisor_for(make_core(DYING_CORE))
    supervisor.start(core_config)
    assert wait_for(lambda: supervisor.state is ProcessState.FAILED)
    first_pid = supervisor.process.pid

    assert supervisor.start(core_config) is True

    assert supervisor.state is ProcessState.RUNNING
    assert supervisor.process.pid != first_pid
    assert sink.states[-2:] == [ProcessState.STARTING, ProcessState.RUNNING]


def test_traffic_updates_flow_while_running(
    make_core,
    core_config: Path,
    supervisor_for,
    sink: RecordingSink,
    control_plane: FakeControlPlane,
) -> None:
    supervisor = supervisor_for(make_core(SERVING_CORE))
    supervisor.start(core_config)

    assert wait_for(lambda: len(sink.traffic) >= 2)
    supervisor.stop()
    polls_after_stop = control_plane.polls
    time.sleep(0.2)

    sample, rate = sink.traffic[-1]
    assert sample.download_bytes == sample.upload_bytes * 4
    assert rate.upload_bps > 0
    assert rate.download_bps > rate.upload_bps
    assert all(
        request.headers["Authorization"] == "Bearer abc123" for request in control_plane.requests
    )
    assert control_plane.polls == polls_after_stop


def test_reload_failure_keeps_previous_config_path(
    make_core,
    core_config: Path,
    tmp_path: Path,
    supervisor_for,
    sink: RecordingSink,
    control_plane: FakeControlPlane,
) -> None:
    supervisor = supervisor_for(make_core(SERVING_CORE))
    supervisor.start(core_config)
    control_plane.reject_reload = True
    new_config = tmp_path / "other.yaml"
    new_config.write_text("external-controller: 127.0.0.1:9191\n")

    assert supervisor.reload_config(new_config) is False

    assert supervisor.config_path == core_config.resolve()
    assert supervisor.state is ProcessState.RUNNING
    assert supervisor.controller.port == 9097
    assert any("Config reload rejected" in error for error in sink.errors)


def test_reload_success_records_new_path_and_controller(
    make_core,
    core_config: Path,
    tmp_path: Path,
    supervisor_for,
    control_plane: FakeControlPlane,
) -> None:
    supervisor = supervisor_for(make_core(SERVING_CORE))
    supervisor.start(core_config)
    new_config = tmp_path / "other.yaml"
    new_config.write_text("external-controller: 127.0.0.1:9191\nsecret: next\n")

    assert supervisor.reload_config(new_config) is True

    assert supervisor.config_path == new_config.resolve()
    assert supervisor.controller == ControllerConfig("127.0.0.1", 9191, "next")
    assert supervisor.client.controller.port == 9191
    assert supervisor.state is ProcessState.RUNNING


def test_early_exit_with_orphaned_child_does_not_block_start(
    make_core, core_config: Path, supervisor_for, sink: RecordingSink
) -> None:
    supervisor = supervisor_for(make_core(ORPHANING_CORE))

    started = time.monotonic()
    with pytest.raises(ProcessExitedEarlyError) as exc_info:
        supervisor.start(core_config)
    elapsed = time.monotonic() - started

    assert elapsed < 2.0
    assert exc_info.value.exit_code == 3
    assert supervisor.state is ProcessState.FAILED
    assert wait_for(lambda: "fatal: bad config" in sink.logs)


def test_missing_binary_after_failure_clears_dead_session(
    make_core, core_config: Path, tmp_path: Path, supervisor_for, sink: RecordingSink
) -> None:
    supervisor = supervisor_for(make_core(DYING_CORE))
    supervisor.start(core_config)
    assert wait_for(lambda: supervisor.state is ProcessState.FAILED)
    supervisor.settings.binary_path = tmp_path / "removed" / "mihomo"

    with pytest.raises(BinaryUnavailableError):
        supervisor.start(core_config)

    assert supervisor.state is ProcessState.STOPPED
    assert supervisor.process is None
    assert sink.states[-1] is ProcessState.STOPPED


def test_reload_with_new_controller_keeps_traffic_flowing(
    make_core,
    core_config: Path,
    tmp_path: Path,
    supervisor_for,
    sink: RecordingSink,
    control_plane: FakeControlPlane,
) -> None:
    supervisor = supervisor_for(make_core(SERVING_CORE))
    supervisor.start(core_config)
    assert wait_for(lambda: control_plane.polls >= 2)
    old_client = supervisor.client
    new_config = tmp_path / "other.yaml"
    new_config.write_text("external-controller: 127.0.0.1:9191\nsecret: next\n")

    assert supervisor.reload_config(new_config) is True

    assert supervisor.client is not old_client
    assert not old_client.is_closed
    polls_after_reload = control_plane.polls
    assert wait_for(lambda: control_plane.polls >= polls_after_reload + 3)
    assert sink.errors == []
    assert any(
        request.url.port == 9191 and request.url.path == "/traffic"
        for request in control_plane.requests
    )

    supervisor.stop()

    assert old_client.is_closed
