"""Streaming of the core's combined stdout/stderr.

Each non-blank line is forwarded to the observer as a log event and written
to the core log file through a loguru record bound with ``core_output=True``
(see ``proxy_core_manager.core.utils.log_config``). The reader ends when the
stream reaches EOF, which happens once the process exits.
"""

import threading
from typing import TextIO

from loguru import logger

from .events import EventDispatcher

core_logger = logger.bind(core_output=True)


class LogStreamReader:
    """Forwards output lines of the core process as log events."""

    def __init__(self, stream: TextIO, events: EventDispatcher, cancel: threading.Event) -> None:
        self._stream = stream
        self._events = events
        self._cancel = cancel
        self.lines_read = 0

    def run(self) -> None:
        try:
            for raw in self._stream:
                line = raw.rstrip("\r\n")
                if not line.strip():
                    continue
                self.lines_read += 1
                core_logger.debug(line)
                self._events.log(line)
        except (OSError, ValueError) as e:
            # ValueError: the stream was closed under us during stop
            if self._cancel.is_set():
                logger.debug(f"Log reader closed during stop: {e}")
            else:
                logger.error(f"Log reader error: {e}")
        logger.debug(f"Log reader finished after {self.lines_read} lines")
