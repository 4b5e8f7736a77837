"""
Version information for the ping/pong relayer.
"""
import importlib.metadata
import pathlib

import tomli

DISTRIBUTION_NAME = "pingpong-relayer"

try:
    __version__ = importlib.metadata.version(DISTRIBUTION_NAME)
except importlib.metadata.PackageNotFoundError:
    # Running from a source checkout: read the version straight from pyproject.toml
    try:
        with (pathlib.Path(__file__).parent.parent / "pyproject.toml").open("rb") as f:
            __version__ = tomli.load(f)["project"]["version"]
    except (FileNotFoundError, KeyError, tomli.TOMLDecodeError):
        __version__ = "0.0.0"
