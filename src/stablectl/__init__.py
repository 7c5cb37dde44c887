"""stablectl package bootstrap.

A *stable* is a directory holding unpacked MySQL binary distributions and the
disposable server instances created from them. This module only exposes the
package metadata; the core lives in :mod:`stablectl.stable`.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# NOTE: The version is duplicated in ``pyproject.toml`` and managed by Hatch.
__version__ = "0.1.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
