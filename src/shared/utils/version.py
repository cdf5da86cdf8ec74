"""
Version utilities for the pipeline worker.

An installed distribution answers from its metadata; a source checkout
falls back to reading pyproject.toml.
"""

import tomllib
from importlib import metadata
from pathlib import Path
from typing import Any, Dict

DISTRIBUTION_NAME = "bizops-pipeline"
UNKNOWN_VERSION = "0.0.0+unknown"


def get_project_root() -> Path:
    """Get the project root directory by finding pyproject.toml"""
    current_path = Path(__file__).resolve()

    for parent in current_path.parents:
        if (parent / "pyproject.toml").exists():
            return parent

    raise FileNotFoundError("Could not find pyproject.toml in project hierarchy")


def read_pyproject_toml() -> Dict[str, Any]:
    """Read and parse the pyproject.toml file"""
    pyproject_path = get_project_root() / "pyproject.toml"
    with open(pyproject_path, "rb") as f:
        return tomllib.load(f)


def get_version() -> str:
    """Installed version, else the checkout's pyproject version, else a placeholder."""
    try:
        return metadata.version(DISTRIBUTION_NAME)
    except metadata.PackageNotFoundError:
        pass

    try:
        return read_pyproject_toml()["project"]["version"]
    except (FileNotFoundError, KeyError):
        return UNKNOWN_VERSION
