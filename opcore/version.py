"""
Version management for opcore.

The version is read from pyproject.toml, which serves as the single source
of truth. Installed (non-editable) copies fall back to the distribution
metadata.
"""

from importlib import metadata as importlib_metadata
from pathlib import Path

import tomli

_FALLBACK_VERSION = "0.1.0"


def _find_pyproject() -> Path:
    """Locate pyproject.toml next to the package directory."""
    return Path(__file__).resolve().parent.parent / "pyproject.toml"


def get_version_from_pyproject() -> str:
    """
    Read the version from pyproject.toml.

    Returns:
        str: Version string
    """
    pyproject_path = _find_pyproject()
    if pyproject_path.exists():
        try:
            with open(pyproject_path, "rb") as f:
                pyproject = tomli.load(f)
            return pyproject["project"]["version"]
        except (tomli.TOMLDecodeError, KeyError):
            pass

    try:
        return importlib_metadata.version("opcore")
    except importlib_metadata.PackageNotFoundError:
        return _FALLBACK_VERSION


__version__ = get_version_from_pyproject()
