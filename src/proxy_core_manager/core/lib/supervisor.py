"""Lifecycle supervision of the external proxy-core process.

This module owns the core executable from launch to exit:
- Binary validation and launch with a private data directory
- A startup grace period that catches immediate crashes
- Background log streaming, traffic monitoring and exit watching
- Graceful termination with a force-kill fallback
- Configuration hot-reload through the control-plane API

State machine::

    STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED
                   |           |
                   +-> FAILED  +-> FAILED (unexpected exit)

The supervisor is the only writer of its state. Background tasks of a
running session share one ``TaskScope``; its cancel event is set in the same
critical section that moves the state away from ``RUNNING``, and ``stop``
joins every task before it returns.

Example:
    supervisor = CoreSupervisor(CoreSettings(binary_path=Path("/opt/mihomo")))
    supervisor.set_observer(my_sink)
    supervisor.start(Path("config.yaml"))
    ...
    supervisor.stop()
"""

import contextlib
import os
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import partial
from pathlib import Path
from typing import Final

import psutil
from loguru import logger

from proxy_core_manager.core.controller_config import ControllerConfig, load_controller_config
from proxy_core_manager.core.exceptions import BinaryUnavailableError, ProcessExitedEarlyError
from proxy_core_manager.core.settings import CoreSettings

from .control_plane import ControlPlaneClient
from .events import EventDispatcher, EventSink
from .log_reader import LogStreamReader
from .models import ProcessState
from .task_scope import TaskScope
from .traffic_monitor import TrafficMonitor

ClientFactory = Callable[[ControllerConfig], ControlPlaneClient]

OUTPUT_DRAIN_TIMEOUT: Final = 0.5  # seconds


@dataclass
class ManagedProcess:
    """The running core process and what it was started with."""

    handle: subprocess.Popen
    config_path: Path
    started_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    @property
    def pid(self) -> int:
        return self.handle.pid

    def is_alive(self) -> bool:
        return self.handle.poll() is None

    def memory_rss(self) -> int | None:
        """Resident memory of the core in bytes, None if unavailable."""
        try:
            return psutil.Process(self.pid).memory_info().rss
        except psutil.Error:
            return None


def check_binary(binary_path: Path) -> None:
    """Verify the core executable exists and may be executed.

    Raises:
        BinaryUnavailableError: If the file is missing or not executable
    """
    if not binary_path.is_file():
        raise BinaryUnavailableError(f"Core binary not found: {binary_path}")
    if not os.access(binary_path, os.X_OK):
        raise BinaryUnavailableError(f"Core binary is not executable: {binary_path}")


def terminate_process(handle: subprocess.Popen, timeout: float) -> int:
    """Terminate a process, force-killing it and its children after ``timeout``.

    Args:
        handle: Process to stop
        timeout: Seconds to wait after SIGTERM before killing

    Returns:
        int: The process exit code
    """
    if handle.poll() is not None:
        return handle.returncode

    # Children must be collected while the parent still exists
    try:
        children = psutil.Process(handle.pid).children(recursive=True)
    except psutil.Error:
        children = []

    handle.terminate()
    try:
        return handle.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning(f"Core did not exit within {timeout:g}s, force killing")

    for child in children:
        with contextlib.suppress(psutil.Error):
            child.kill()
    handle.kill()
    return handle.wait(timeout=timeout)


class CoreSupervisor:
    """Owns one proxy-core process and the tasks observing it."""

    def __init__(
        self,
        settings: CoreSettings | None = None,
        client_factory: ClientFactory | None = None,
        events: EventDispatcher | None = None,
    ) -> None:
        """Initialize the supervisor.

        Args:
            settings: Binary location, data directory and timing
            client_factory: Builds a control-plane client for given controller settings
            events: Dispatcher for observer notifications
        """
        self.settings = settings or CoreSettings()
        self._client_factory = client_factory or partial(
            ControlPlaneClient,
            connect_timeout=self.settings.connect_timeout,
            read_timeout=self.settings.read_timeout,
        )
        self.events = events or EventDispatcher()

        # start/stop/reload are serialized; the state lock guards single fields
        self._lifecycle_lock = threading.RLock()
        self._state_lock = threading.Lock()

        self._state = ProcessState.STOPPED
        self._process: ManagedProcess | None = None
        self._config_path: Path | None = None
        self._scope: TaskScope | None = None
        self._controller = ControllerConfig()
        self._client: ControlPlaneClient | None = None
        self._retired_clients: list[ControlPlaneClient] = []

    def __enter__(self) -> "CoreSupervisor":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def state(self) -> ProcessState:
        with self._state_lock:
            return self._state

    @property
    def controller(self) -> ControllerConfig:
        with self._state_lock:
            return self._controller

    @property
    def config_path(self) -> Path | None:
        with self._state_lock:
            return self._config_path

    @property
    def process(self) -> ManagedProcess | None:
        with self._state_lock:
            return self._process

    @property
    def client(self) -> ControlPlaneClient:
        """Control-plane client bound to the current controller settings."""
        with self._state_lock:
            if self._client is None:
                self._client = self._client_factory(self._controller)
            return self._client

    def set_observer(self, observer: EventSink | None) -> None:
        self.events.set_observer(observer)

    def is_running(self) -> bool:
        """Return True if the core is RUNNING and its process is still alive."""
        with self._state_lock:
            process = self._process
            running = self._state is ProcessState.RUNNING
        return running and process is not None and process.is_alive()

    def _set_state(self, state: ProcessState) -> None:
        with self._state_lock:
            self._state = state
        self._announce(state)

    def _announce(self, state: ProcessState) -> None:
        logger.info(f"Core state: {state.label}")
        self.events.state_changed(state)

    def _fail(self, message: str) -> None:
        logger.error(message)
        self.events.error(message)

    def _bind_controller(self, controller: ControllerConfig) -> None:
        with self._state_lock:
            if controller == self._controller and self._client is not None:
                return
            stale = self._client
            self._controller = controller
            self._client = self._client_factory(controller)
            # The traffic monitor may still hold the old client mid-poll
            if stale is not None and self._scope is not None:
                self._retired_clients.append(stale)
                stale = None
        if stale is not None:
            stale.close()

    def _close_retired_clients(self) -> None:
        with self._state_lock:
            retired, self._retired_clients = self._retired_clients, []
        for client in retired:
            client.close()

    def _launch(self, binary_path: Path, config_path: Path) -> subprocess.Popen:
        data_dir = self.settings.data_dir
        command = [str(binary_path), "-d", str(data_dir), "-f", str(config_path)]
        logger.info(f"Starting core: {' '.join(command)}")
        return subprocess.Popen(
            command,
            cwd=data_dir,
            env={**os.environ, "HOME": str(data_dir)},
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )

    def _drain_output(self, handle: subprocess.Popen) -> None:
        """Forward whatever an exited process left in its output pipe.

        Children that inherited the pipe keep it open after the core exits,
        so the drain gives up after ``OUTPUT_DRAIN_TIMEOUT`` and leaves the
        reader to finish at EOF on its own.
        """
        if handle.stdout is None:
            return
        abandoned = threading.Event()
        reader = LogStreamReader(handle.stdout, self.events, abandoned)
        drain = threading.Thread(target=reader.run, name=f"core-{handle.pid}-drain", daemon=True)
        drain.start()
        drain.join(OUTPUT_DRAIN_TIMEOUT)
        if drain.is_alive():
            abandoned.set()
            logger.warning("Core output pipe still held open by a child process")
            return
        with contextlib.suppress(OSError):
            handle.stdout.close()

    def start(self, config_path: Path | str) -> bool:
        """Start the core with the given configuration.

        Calling this while the core runs is a no-op that returns True.

        Args:
            config_path: Path to the proxy-core configuration document

        Returns:
            bool: True once the core survived the startup grace period

        Raises:
            BinaryUnavailableError: If the executable is missing or cannot be launched
            ProcessExitedEarlyError: If the core exits during the grace period
        """
        config_path = Path(config_path).expanduser().resolve()
        with self._lifecycle_lock:
            if self.is_running():
                logger.warning("Core is already running")
                return True

            # Leftovers of a session that died on its own
            if self.process is not None:
                self.stop()

            binary_path = self.settings.binary_path
            try:
                check_binary(binary_path)
            except BinaryUnavailableError as e:
                self._fail(str(e))
                raise

            self._bind_controller(load_controller_config(config_path, fallback=self.controller))
            self._set_state(ProcessState.STARTING)
            self.settings.ensure_dirs()

            try:
                handle = self._launch(binary_path, config_path)
            except OSError as e:
                self._set_state(ProcessState.STOPPED)
                self._fail(f"Failed to start core: {e}")
                raise BinaryUnavailableError(f"Failed to start core: {e}") from e

            try:
                exit_code = handle.wait(timeout=self.settings.grace_period)
            except subprocess.TimeoutExpired:
                exit_code = None

            if exit_code is not None:
                self._drain_output(handle)
                self._set_state(ProcessState.FAILED)
                error = ProcessExitedEarlyError(exit_code)
                self._fail(str(error))
                raise error

            managed = ManagedProcess(handle=handle, config_path=config_path)
            scope = TaskScope(name=f"core-{handle.pid}")
            with self._state_lock:
                self._process = managed
                self._config_path = config_path
                self._scope = scope
                self._state = ProcessState.RUNNING
            self._announce(ProcessState.RUNNING)

            reader = LogStreamReader(handle.stdout, self.events, scope.cancel_event)
            monitor = TrafficMonitor(
                lambda: self.client,
                self.events,
                scope.cancel_event,
                poll_interval=self.settings.poll_interval,
                retry_interval=self.settings.retry_interval,
            )
            scope.spawn("log-reader", reader.run)
            scope.spawn("traffic-monitor", monitor.run)
            scope.spawn("exit-watcher", partial(self._watch_exit, managed, scope))

            logger.info(f"Core started successfully (pid {handle.pid})")
            return True

    def _watch_exit(self, managed: ManagedProcess, scope: TaskScope) -> None:
        exit_code = managed.handle.wait()
        with self._state_lock:
            if scope.cancelled or self._process is not managed:
                return
            scope.cancel()
            self._state = ProcessState.FAILED
        self._announce(ProcessState.FAILED)
        self._fail(f"Core exited unexpectedly (exit code: {exit_code})")

    def stop(self) -> None:
        """Stop the core and join its background tasks.

        Always ends in ``STOPPED`` with no managed process, even when
        termination fails.
        """
        with self._lifecycle_lock:
            with self._state_lock:
                if self._state is ProcessState.STOPPED and self._process is None:
                    return
                managed, scope = self._process, self._scope
                self._state = ProcessState.STOPPING
                if scope is not None:
                    scope.cancel()
            self._announce(ProcessState.STOPPING)

            try:
                if managed is not None:
                    exit_code = terminate_process(managed.handle, self.settings.stop_timeout)
                    logger.info(f"Core exited with code {exit_code}")
            except Exception:
                logger.exception("Error while terminating core")
            finally:
                stragglers = scope.join(self.settings.join_timeout) if scope is not None else []
                if managed is not None and managed.handle.stdout is not None and not stragglers:
                    with contextlib.suppress(OSError):
                        managed.handle.stdout.close()
                with self._state_lock:
                    self._process = None
                    self._config_path = None
                    self._scope = None
                    self._state = ProcessState.STOPPED
                self._close_retired_clients()
                self._announce(ProcessState.STOPPED)
                logger.info("Core stopped")

    def reload_config(self, config_path: Path | str) -> bool:
        """Hot-reload the running core with another configuration document.

        Args:
            config_path: Path to the new configuration document

        Returns:
            bool: True if the core accepted the configuration
        """
        config_path = Path(config_path).expanduser().resolve()
        if not self.client.apply_config(config_path, force=True):
            self._fail(f"Config reload rejected: {config_path}")
            return False

        with self._lifecycle_lock:
            with self._state_lock:
                self._config_path = config_path
            self._bind_controller(load_controller_config(config_path, fallback=self.controller))
        return True

    def close(self) -> None:
        """Stop the core and release the control-plane client."""
        self.stop()
        with self._state_lock:
            client, self._client = self._client, None
        if client is not None:
            client.close()
