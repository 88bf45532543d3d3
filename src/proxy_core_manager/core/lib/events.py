"""Observer contract for core events.

The supervisor reports four kinds of events outward:
- State transitions (a new ``ProcessState``)
- Traffic updates (cumulative counters plus derived rates)
- Log lines from the core's output
- Human-readable error messages

A single observer is registered at a time. The dispatcher shields the
emitting loops from the observer: an exception raised by a callback is
logged and dropped, so a faulty UI can never stop the traffic monitor or the
log reader.

Example:
    class PrintSink:
        def on_state_changed(self, state): print(state.label)
        def on_traffic(self, sample, rate): print(rate.download_bps)
        def on_log(self, line): print(line)
        def on_error(self, message): print(message)

    dispatcher = EventDispatcher()
    dispatcher.set_observer(PrintSink())
"""

import threading
from typing import Protocol

from loguru import logger

from .models import ProcessState, TrafficRate, TrafficSample


class EventSink(Protocol):
    """Receiver of supervisor events. Callbacks must return quickly."""

    def on_state_changed(self, state: ProcessState) -> None: ...

    def on_traffic(self, sample: TrafficSample, rate: TrafficRate) -> None: ...

    def on_log(self, line: str) -> None: ...

    def on_error(self, message: str) -> None: ...


class EventDispatcher:
    """Holds the current observer and forwards events to it."""

    def __init__(self, observer: EventSink | None = None) -> None:
        self._observer = observer
        self._lock = threading.Lock()

    def set_observer(self, observer: EventSink | None) -> None:
        """Replace the registered observer; ``None`` clears it."""
        with self._lock:
            self._observer = observer

    @property
    def observer(self) -> EventSink | None:
        with self._lock:
            return self._observer

    def _emit(self, callback: str, *args: object) -> None:
        observer = self.observer
        if observer is None:
            return
        try:
            getattr(observer, callback)(*args)
        except Exception:
            logger.exception(f"Observer {callback} callback failed")

    def state_changed(self, state: ProcessState) -> None:
        self._emit("on_state_changed", state)

    def traffic(self, sample: TrafficSample, rate: TrafficRate) -> None:
        self._emit("on_traffic", sample, rate)

    def log(self, line: str) -> None:
        self._emit("on_log", line)

    def error(self, message: str) -> None:
        self._emit("on_error", message)
