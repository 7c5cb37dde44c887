"""Persistence helpers for the stable document."""
from __future__ import annotations

from .migrations import SCHEMA_VERSION, migrate
from .registry import STATE_FILE, StateRegistry, StateRegistryError

__all__ = ["SCHEMA_VERSION", "STATE_FILE", "StateRegistry", "StateRegistryError", "migrate"]
