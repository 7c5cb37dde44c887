"""Provider interfaces for stablectl."""
from __future__ import annotations

from .commands import CommandError, CommandRunner

__all__ = ["CommandError", "CommandRunner"]
