"""
Version information for the MultiWallet SDK.
"""
import importlib.metadata
import pathlib

import tomli

DISTRIBUTION = "multiwallet-sdk"
UNKNOWN_VERSION = "0.0.0+unknown"


def _resolve_version() -> str:
    """Installed distribution version, else the one declared in a source checkout"""
    try:
        return importlib.metadata.version(DISTRIBUTION)
    except importlib.metadata.PackageNotFoundError:
        pass

    pyproject = pathlib.Path(__file__).resolve().parent.parent / "pyproject.toml"
    try:
        with pyproject.open("rb") as f:
            project = tomli.load(f).get("project", {})
    except (OSError, tomli.TOMLDecodeError):
        return UNKNOWN_VERSION
    if project.get("name") != DISTRIBUTION:
        return UNKNOWN_VERSION
    return project.get("version", UNKNOWN_VERSION)


__version__ = _resolve_version()
