"""Controller settings extraction from the proxy-core configuration.

The core's configuration document is opaque to this project except for two
directives needed to reach its control-plane API:

    external-controller: 127.0.0.1:9090
    secret: "s3cret"

Matching is tolerant: optional quotes, surrounding whitespace, trailing
comments and bracketed IPv6 hosts are accepted, and anything missing or
malformed falls back to a default. Extraction never raises, so a broken
document can never block process startup.

Example:
    controller = load_controller_config(Path("config.yaml"))
    print(controller.base_url)
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from loguru import logger

DEFAULT_HOST: Final = "127.0.0.1"
DEFAULT_PORT: Final = 9090
DEFAULT_SECRET: Final = ""

MAX_PORT: Final = 65535

# Bind-all addresses are not connectable targets
WILDCARD_HOSTS: Final = frozenset({"0.0.0.0", "::", ""})

_CONTROLLER_RE = re.compile(
    r"""
    ^[ \t]*external-controller[ \t]*:[ \t]*
    ['"]?
    (?:\[(?P<ipv6>[^\]]*)\]|(?P<host>[^'":\s\#]*))
    (?::(?P<port>[^'"\s\#]*))?
    """,
    re.MULTILINE | re.VERBOSE,
)

_SECRET_RE = re.compile(
    r"""
    ^[ \t]*secret[ \t]*:[ \t]*
    (?:"(?P<dq>[^"]*)"|'(?P<sq>[^']*)'|(?P<bare>[^\s'"\#]*))
    """,
    re.MULTILINE | re.VERBOSE,
)


@dataclass(frozen=True)
class ControllerConfig:
    """Address and credentials of the core's control-plane API.

    Attributes:
        host: Control-plane host name or IP address
        port: Control-plane TCP port
        secret: Shared secret; empty means no authorization header is sent
    """

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    secret: str = DEFAULT_SECRET

    @property
    def base_url(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"http://{host}:{self.port}"

    @property
    def auth_headers(self) -> dict[str, str]:
        if not self.secret:
            return {}
        return {"Authorization": f"Bearer {self.secret}"}

    def masked_secret(self) -> str:
        """Return the secret with everything past the first three characters hidden."""
        if not self.secret:
            return ""
        return f"{self.secret[:3]}..."


def _parse_port(raw: str | None) -> int:
    if not raw or not raw.isdigit():
        return DEFAULT_PORT
    port = int(raw)
    if not 0 < port <= MAX_PORT:
        return DEFAULT_PORT
    return port


def extract_controller_config(text: str) -> ControllerConfig:
    """Extract controller settings from the raw configuration text.

    Args:
        text: Contents of the proxy-core configuration document

    Returns:
        ControllerConfig: Extracted settings, with defaults for anything missing
    """
    host = DEFAULT_HOST
    port = DEFAULT_PORT
    secret = DEFAULT_SECRET

    controller = _CONTROLLER_RE.search(text)
    if controller:
        raw_host = controller.group("ipv6") or controller.group("host") or ""
        host = DEFAULT_HOST if raw_host in WILDCARD_HOSTS else raw_host
        port = _parse_port(controller.group("port"))
    else:
        logger.debug("No external-controller directive found, using defaults")

    match = _SECRET_RE.search(text)
    if match:
        secret = next((v for v in match.group("dq", "sq", "bare") if v is not None), "")
    else:
        logger.debug("No secret directive found, control-plane calls are unauthenticated")

    return ControllerConfig(host=host, port=port, secret=secret)


def load_controller_config(
    config_path: Path, fallback: ControllerConfig | None = None
) -> ControllerConfig:
    """Read the configuration document and extract controller settings.

    Args:
        config_path: Path to the proxy-core configuration document
        fallback: Settings to keep when the document cannot be read

    Returns:
        ControllerConfig: Fresh settings, or ``fallback`` (defaults if None) on read errors
    """
    try:
        text = Path(config_path).read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning(f"Could not read core config {config_path}: {e}")
        return fallback if fallback is not None else ControllerConfig()

    controller = extract_controller_config(text)
    logger.info(
        f"Controller: {controller.host}:{controller.port}, "
        f"secret: {controller.masked_secret() or '<none>'}"
    )
    return controller
