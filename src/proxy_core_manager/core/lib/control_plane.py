"""REST client for the proxy core's control-plane API.

This module talks to the HTTP API exposed by the core on its
``external-controller`` address. It provides:
- Version, traffic, memory, connection, rule and proxy queries
- Proxy selection inside a selector group
- Latency probes through a named proxy, singly, concurrently or per group
- Configuration hot-reload, patching and provider refresh

Every call uses fixed, short timeouts so a hung core never blocks its caller
for long. Failures never propagate: network errors, timeouts, error statuses
and malformed bodies are logged and turned into the failure value of the
call (``None``, ``False`` or ``-1`` for delay probes).

Example:
    with ControlPlaneClient(ControllerConfig(secret="s3cret")) as client:
        delay = client.test_delay("Tokyo-01")
        if delay == DELAY_UNAVAILABLE:
            print("unreachable")
"""

import json
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Final
from urllib.parse import quote

import httpx
from loguru import logger

from proxy_core_manager.core.controller_config import ControllerConfig
from proxy_core_manager.core.exceptions import (
    ControlPlaneError,
    ControlPlaneRejectedError,
    ControlPlaneUnreachableError,
)
from proxy_core_manager.core.settings import DEFAULT_CONNECT_TIMEOUT, DEFAULT_READ_TIMEOUT

from .models import TrafficSample

# Delay probe targets, most reliable first
DELAY_TEST_URLS: Final = (
    "https://www.gstatic.com/generate_204",
    "https://cp.cloudflare.com/generate_204",
    "https://www.google.com/generate_204",
    "http://www.msftconnecttest.com/connecttest.txt",
)
DEFAULT_DELAY_TEST_URL: Final = DELAY_TEST_URLS[0]
DEFAULT_DELAY_TIMEOUT_MS: Final = 5000
FALLBACK_DELAY_TIMEOUT_MS: Final = 8000
DEFAULT_DELAY_CONCURRENCY: Final = 5
DELAY_READ_MARGIN: Final = 2.0  # seconds on top of the probe timeout
GROUP_DELAY_READ_MARGIN: Final = 5.0
DELAY_UNAVAILABLE: Final = -1

ERROR_BODY_PREVIEW: Final = 200


def _segment(name: str) -> str:
    """Percent-encode a proxy or group name for use as a path segment."""
    return quote(name, safe="")


class ControlPlaneClient:
    """Client bound to one controller address and secret."""

    def __init__(
        self,
        controller: ControllerConfig,
        *,
        transport: httpx.BaseTransport | None = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the client.

        Args:
            controller: Address and secret of the control-plane API
            transport: Optional httpx transport, mainly for tests
            connect_timeout: Connect timeout in seconds
            read_timeout: Read and write timeout in seconds
            clock: Monotonic clock used to timestamp traffic samples
        """
        self.controller = controller
        self._clock = clock
        self._timeout = httpx.Timeout(read_timeout, connect=connect_timeout)
        self._http = httpx.Client(
            base_url=controller.base_url,
            headers=controller.auth_headers,
            timeout=self._timeout,
            transport=transport,
        )

    def __enter__(self) -> "ControlPlaneClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    @property
    def is_closed(self) -> bool:
        return self._http.is_closed

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ControlPlaneUnreachableError(f"{method} {path}: {e}") from e
        except RuntimeError as e:
            # httpx refuses to send once the client is closed
            if not self._http.is_closed:
                raise
            raise ControlPlaneUnreachableError(f"{method} {path}: client is closed") from e
        if response.is_error:
            raise ControlPlaneRejectedError(
                response.status_code,
                f"{method} {path} returned {response.status_code}: "
                f"{response.text[:ERROR_BODY_PREVIEW]}",
            )
        return response

    @staticmethod
    def _decode(payload: str | bytes, path: str) -> dict[str, Any]:
        try:
            data = json.loads(payload)
        except ValueError as e:
            raise ControlPlaneError(f"Malformed response from {path}: {e}") from e
        if not isinstance(data, dict):
            raise ControlPlaneError(f"Unexpected response from {path}: {data!r}")
        return data

    def _get_json(self, path: str, **kwargs: Any) -> dict[str, Any]:
        return self._decode(self._request("GET", path, **kwargs).content, path)

    def _get_first_object(self, path: str) -> dict[str, Any]:
        """Read the first JSON object of a streaming endpoint.

        ``/traffic`` and ``/memory`` stream one object per line for as long as
        the connection stays open.
        """
        try:
            with self._http.stream("GET", path) as response:
                if response.is_error:
                    raise ControlPlaneRejectedError(
                        response.status_code, f"GET {path} returned {response.status_code}"
                    )
                line = next((line for line in response.iter_lines() if line.strip()), None)
        except httpx.HTTPError as e:
            raise ControlPlaneUnreachableError(f"GET {path}: {e}") from e
        except RuntimeError as e:
            if not self._http.is_closed:
                raise
            raise ControlPlaneUnreachableError(f"GET {path}: client is closed") from e

        if line is None:
            raise ControlPlaneError(f"{path} stream closed without data")
        return self._decode(line, path)

    def health_check(self) -> bool:
        """Return True if the control-plane API answers at all."""
        try:
            self._request("GET", "/")
        except ControlPlaneError as e:
            logger.debug(f"Health check failed: {e}")
            return False
        return True

    def get_version(self) -> str | None:
        """Return the core's version string."""
        try:
            data = self._get_json("/version")
        except ControlPlaneError as e:
            logger.warning(f"Failed to get version: {e}")
            return None
        version = data.get("version")
        return version if isinstance(version, str) else None

    def get_traffic(self) -> TrafficSample | None:
        """Take a snapshot of the core's traffic counters.

        Only the first object of the ``/traffic`` stream is read.

        Returns:
            TrafficSample | None: The snapshot, or None on any failure
        """
        try:
            data = self._get_first_object("/traffic")
            return TrafficSample(
                upload_bytes=int(data.get("up", 0)),
                download_bytes=int(data.get("down", 0)),
                observed_at=self._clock(),
            )
        except (ControlPlaneError, TypeError, ValueError) as e:
            logger.debug(f"Failed to get traffic: {e}")
            return None

    def get_connections(self) -> dict[str, Any] | None:
        """Return the core's connection table as decoded JSON."""
        try:
            return self._get_json("/connections")
        except ControlPlaneError as e:
            logger.warning(f"Failed to get connections: {e}")
            return None

    def get_memory(self) -> dict[str, Any] | None:
        """Return the core's memory usage (first object of the ``/memory`` stream)."""
        try:
            return self._get_first_object("/memory")
        except ControlPlaneError as e:
            logger.warning(f"Failed to get memory: {e}")
            return None

    def get_rules(self) -> dict[str, Any] | None:
        try:
            return self._get_json("/rules")
        except ControlPlaneError as e:
            logger.warning(f"Failed to get rules: {e}")
            return None

    def close_connections(self, connection_id: str | None = None) -> bool:
        """Close one connection, or all of them when no id is given."""
        path = "/connections" if connection_id is None else f"/connections/{_segment(connection_id)}"
        try:
            self._request("DELETE", path)
        except ControlPlaneError as e:
            logger.warning(f"Failed to close connections: {e}")
            return False
        logger.info(f"Closed {'all connections' if connection_id is None else connection_id}")
        return True

    def get_proxies(self) -> dict[str, Any] | None:
        """Return every proxy and proxy group known to the core."""
        try:
            return self._get_json("/proxies")
        except ControlPlaneError as e:
            logger.warning(f"Failed to get proxies: {e}")
            return None

    def get_proxy(self, name: str) -> dict[str, Any] | None:
        """Return a single proxy or proxy group."""
        try:
            return self._get_json(f"/proxies/{_segment(name)}")
        except ControlPlaneError as e:
            logger.warning(f"Failed to get proxy {name}: {e}")
            return None

    def switch_proxy(self, selector: str, name: str) -> bool:
        """Select ``name`` inside the selector group ``selector``."""
        try:
            self._request("PUT", f"/proxies/{_segment(selector)}", json={"name": name})
        except ControlPlaneError as e:
            logger.warning(f"Failed to switch {selector} to {name}: {e}")
            return False
        logger.info(f"Proxy selected: {selector} -> {name}")
        return True

    def test_delay(
        self,
        proxy: str,
        url: str = DEFAULT_DELAY_TEST_URL,
        timeout_ms: int = DEFAULT_DELAY_TIMEOUT_MS,
    ) -> int:
        """Measure the delay of a request to ``url`` routed through ``proxy``.

        Args:
            proxy: Proxy name
            url: Probe URL
            timeout_ms: Probe timeout enforced by the core, in milliseconds

        Returns:
            int: Delay in milliseconds, or ``DELAY_UNAVAILABLE`` (-1)
        """
        timeout = httpx.Timeout(
            timeout_ms / 1000 + DELAY_READ_MARGIN, connect=self._timeout.connect
        )
        try:
            data = self._get_json(
                f"/proxies/{_segment(proxy)}/delay",
                params={"timeout": timeout_ms, "url": url},
                timeout=timeout,
            )
        except ControlPlaneError as e:
            logger.debug(f"Delay test failed for {proxy}: {e}")
            return DELAY_UNAVAILABLE

        delay = data.get("delay")
        if isinstance(delay, bool) or not isinstance(delay, int) or delay < 0:
            return DELAY_UNAVAILABLE
        logger.debug(f"Delay test for {proxy}: {delay}ms")
        return delay

    def test_delay_with_fallback(
        self,
        proxy: str,
        urls: Iterable[str] = DELAY_TEST_URLS,
        timeout_ms: int = FALLBACK_DELAY_TIMEOUT_MS,
    ) -> int:
        """Probe ``urls`` in order and return the first positive delay."""
        for url in urls:
            delay = self.test_delay(proxy, url=url, timeout_ms=timeout_ms)
            if delay > 0:
                return delay
        return DELAY_UNAVAILABLE

    def test_delays(
        self,
        names: Iterable[str],
        url: str = DEFAULT_DELAY_TEST_URL,
        timeout_ms: int = DEFAULT_DELAY_TIMEOUT_MS,
        concurrency: int = DEFAULT_DELAY_CONCURRENCY,
    ) -> dict[str, int]:
        """Probe several proxies concurrently.

        Returns:
            dict[str, int]: Delay per proxy name, ``-1`` for unreachable ones
        """
        names = list(dict.fromkeys(names))
        if not names:
            return {}
        with ThreadPoolExecutor(max_workers=max(1, min(concurrency, len(names)))) as pool:
            delays = pool.map(lambda name: self.test_delay(name, url, timeout_ms), names)
            results = dict(zip(names, delays, strict=True))
        logger.info(f"Delay test completed: {len(results)} proxies tested")
        return results

    def test_group_delay(
        self,
        group: str,
        url: str = DEFAULT_DELAY_TEST_URL,
        timeout_ms: int = DEFAULT_DELAY_TIMEOUT_MS,
    ) -> dict[str, int]:
        """Let the core probe every member of ``group`` in one request.

        Returns:
            dict[str, int]: Delay per member, ``-1`` for unreachable members;
            empty if the request itself failed
        """
        timeout = httpx.Timeout(
            timeout_ms / 1000 + GROUP_DELAY_READ_MARGIN, connect=self._timeout.connect
        )
        try:
            data = self._get_json(
                f"/group/{_segment(group)}/delay",
                params={"timeout": timeout_ms, "url": url},
                timeout=timeout,
            )
        except ControlPlaneError as e:
            logger.warning(f"Group delay test failed for {group}: {e}")
            return {}

        results = {
            name: delay
            if isinstance(delay, int) and not isinstance(delay, bool) and delay >= 0
            else DELAY_UNAVAILABLE
            for name, delay in data.items()
        }
        logger.info(f"Group delay test completed for {group}: {len(results)} proxies tested")
        return results

    def apply_config(self, path: Path | str, force: bool = True) -> bool:
        """Ask the core to load the configuration at ``path``."""
        try:
            self._request(
                "PUT",
                "/configs",
                params={"force": "true" if force else "false"},
                json={"path": str(path)},
            )
        except ControlPlaneRejectedError as e:
            logger.error(f"Config reload rejected: {e}")
            return False
        except ControlPlaneError as e:
            logger.error(f"Failed to reload config: {e}")
            return False
        logger.info(f"Config reloaded: {path}")
        return True

    def get_config(self) -> dict[str, Any] | None:
        """Return the core's running configuration."""
        try:
            return self._get_json("/configs")
        except ControlPlaneError as e:
            logger.warning(f"Failed to get config: {e}")
            return None

    def update_config(self, changes: dict[str, Any]) -> bool:
        """Patch individual settings of the running configuration."""
        try:
            self._request("PATCH", "/configs", json=changes)
        except ControlPlaneError as e:
            logger.error(f"Failed to update config: {e}")
            return False
        logger.info(f"Config updated: {', '.join(changes)}")
        return True

    def _update_provider(self, kind: str, name: str) -> bool:
        try:
            self._request("PUT", f"/providers/{kind}/{_segment(name)}")
        except ControlPlaneError as e:
            logger.warning(f"Failed to update {kind} provider {name}: {e}")
            return False
        logger.info(f"Updated {kind} provider: {name}")
        return True

    def update_proxy_provider(self, name: str) -> bool:
        """Refresh a proxy provider from its source."""
        return self._update_provider("proxies", name)

    def update_rule_provider(self, name: str) -> bool:
        """Refresh a rule provider from its source."""
        return self._update_provider("rules", name)
