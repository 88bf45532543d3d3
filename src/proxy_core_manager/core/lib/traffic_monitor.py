"""Traffic polling and rate derivation.

The monitor polls the control-plane API for cumulative byte counters and
turns consecutive samples into throughput:

    rate = (current.bytes - previous.bytes) / elapsed_seconds

A rate needs two samples with a strictly positive time delta, so the first
successful poll of a session only primes the monitor. A failed poll keeps the
previous sample and backs off to the retry interval; the next success after
an outage therefore spans the whole gap and still yields a correct average.

The loop checks its cancel event at the top of every iteration and sleeps on
that same event, so a stop request wakes it immediately.
"""

import threading
from collections.abc import Callable

from loguru import logger

from proxy_core_manager.core.settings import DEFAULT_POLL_INTERVAL, DEFAULT_RETRY_INTERVAL

from .control_plane import ControlPlaneClient
from .events import EventDispatcher
from .models import TrafficRate, TrafficSample


def compute_rate(previous: TrafficSample | None, current: TrafficSample) -> TrafficRate | None:
    """Derive throughput between two samples.

    Args:
        previous: Earlier sample, or None for the first poll
        current: Latest sample

    Returns:
        TrafficRate | None: Bytes per second truncated toward zero, or None
        when there is no previous sample or no time has elapsed
    """
    if previous is None:
        return None
    elapsed = current.observed_at - previous.observed_at
    if elapsed <= 0:
        return None
    return TrafficRate(
        upload_bps=int((current.upload_bytes - previous.upload_bytes) / elapsed),
        download_bps=int((current.download_bytes - previous.download_bytes) / elapsed),
    )


class TrafficMonitor:
    """Background loop polling traffic counters while the core runs."""

    def __init__(
        self,
        client_source: Callable[[], ControlPlaneClient],
        events: EventDispatcher,
        cancel: threading.Event,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
    ) -> None:
        """Initialize the monitor.

        Args:
            client_source: Returns the control-plane client to poll; re-read each
                iteration so a config reload can rebind it
            events: Dispatcher receiving traffic updates
            cancel: Set when the session ends
            poll_interval: Seconds between polls after a success
            retry_interval: Seconds before the next poll after a failure
        """
        self._client_source = client_source
        self._events = events
        self._cancel = cancel
        self.poll_interval = poll_interval
        self.retry_interval = retry_interval
        self.previous: TrafficSample | None = None
        self._failing = False

    def poll_once(self) -> float:
        """Take one sample and emit a rate if possible.

        Returns:
            float: Seconds to wait before the next poll
        """
        sample = self._client_source().get_traffic()
        if sample is None:
            if not self._failing:
                logger.warning(
                    f"Traffic poll failed, retrying every {self.retry_interval:g}s"
                )
            self._failing = True
            return self.retry_interval

        if self._failing:
            logger.info("Traffic polling recovered")
            self._failing = False

        rate = compute_rate(self.previous, sample)
        if rate is not None:
            self._events.traffic(sample, rate)
        self.previous = sample
        return self.poll_interval

    def run(self) -> None:
        logger.debug("Traffic monitor started")
        while not self._cancel.is_set():
            try:
                delay = self.poll_once()
            except Exception:
                logger.exception("Traffic monitor error")
                delay = self.retry_interval
            self._cancel.wait(delay)
        logger.debug("Traffic monitor stopped")
