"""Supervisor and control-plane client for an external proxy-core executable."""

import pathlib
import tomllib
from importlib import metadata


def get_version() -> str:
    """Read version from pyproject.toml."""
    current_dir = pathlib.Path(__file__).parent
    # Source checkouts carry pyproject.toml a few levels up
    for parent in [current_dir, *current_dir.parents]:
        pyproject_path = parent / "pyproject.toml"
        if pyproject_path.exists():
            with pyproject_path.open("rb") as f:
                pyproject_data = tomllib.load(f)
            if pyproject_data.get("project", {}).get("name") == "proxy-core-manager":
                return pyproject_data["project"]["version"]

    try:
        return metadata.version("proxy-core-manager")
    except metadata.PackageNotFoundError:
        return "0.0.0"


__version__ = get_version()
