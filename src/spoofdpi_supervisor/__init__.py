"""Supervisor for the spoofdpi proxy and the macOS system proxy settings."""

import pathlib
import sys
from importlib import metadata

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

DIST_NAME = "spoofdpi-supervisor"


def get_version() -> str:
    """Read version from a source checkout's pyproject.toml or the installed metadata."""
    current_dir = pathlib.Path(__file__).parent
    for parent in current_dir.parents:
        pyproject_path = parent / "pyproject.toml"
        if not pyproject_path.exists():
            continue
        with pyproject_path.open("rb") as f:
            project = tomllib.load(f).get("project", {})
        if project.get("name") == DIST_NAME:
            return project["version"]

    try:
        return metadata.version(DIST_NAME)
    except metadata.PackageNotFoundError:
        return "0.0.0"


__version__ = get_version()
