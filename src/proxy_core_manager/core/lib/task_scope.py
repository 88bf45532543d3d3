"""Cancellation scope owning the background threads of one core session."""

import threading
import time
from collections.abc import Callable

from loguru import logger


class TaskScope:
    """A cancel signal plus the threads spawned under it.

    Every task receives the scope's event at spawn time and checks it between
    iterations. ``cancel`` only signals; ``join`` waits for the tasks.
    """

    def __init__(self, name: str = "core") -> None:
        self.name = name
        self.cancel_event = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    def spawn(self, name: str, target: Callable[[], object]) -> threading.Thread:
        """Start ``target`` on a daemon thread tracked by this scope."""
        thread = threading.Thread(target=target, name=f"{self.name}-{name}", daemon=True)
        self._threads.append(thread)
        thread.start()
        return thread

    def join(self, timeout: float | None = None) -> list[str]:
        """Wait for every task to finish.

        Args:
            timeout: Overall time budget in seconds, None waits forever

        Returns:
            list[str]: Names of threads still alive when the budget ran out
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        current = threading.current_thread()
        others = [thread for thread in self._threads if thread is not current]
        for thread in others:
            thread.join(None if deadline is None else max(0.0, deadline - time.monotonic()))

        stragglers = [thread.name for thread in others if thread.is_alive()]
        if stragglers:
            logger.warning(f"Background tasks still running after stop: {', '.join(stragglers)}")
        return stragglers
