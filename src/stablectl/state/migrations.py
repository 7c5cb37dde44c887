"""Versioned migrations for the persisted stable document.

Each migration takes the document at schema version ``n`` and returns it at
version ``n + 1``. Documents written before versioning was introduced carry no
``schema_version`` key and are treated as version 0.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from copy import deepcopy
from typing import Any

from .registry import StateRegistryError

LOGGER = logging.getLogger(__name__)

SCHEMA_VERSION = 1

Migration = Callable[[dict[str, Any]], dict[str, Any]]


def _derive_server_paths(payload: dict[str, Any]) -> dict[str, Any]:
    """Fill in server path fields that version 0 documents left empty."""
    distributions = payload.get("distributions") or {}
    servers = payload.get("servers") or {}
    if not isinstance(servers, Mapping):
        raise StateRegistryError("Stable document 'servers' must be a mapping.")
    for name, entry in servers.items():
        if not isinstance(entry, dict):
            raise StateRegistryError(f"Server entry {name!r} must be a mapping.")
        base_dir = str(entry.get("base_dir") or "")
        if not base_dir:
            raise StateRegistryError(f"Server entry {name!r} has no base_dir.")
        run_dir = os.path.join(base_dir, "run")
        if not entry.get("bin_path"):
            dist = distributions.get(entry.get("distribution")) or {}
            dist_root = dist.get("root") if isinstance(dist, Mapping) else None
            if dist_root:
                entry["bin_path"] = os.path.join(str(dist_root), "bin", "mysqld")
        if not entry.get("log_path"):
            entry["log_path"] = os.path.join(base_dir, "log", "mysqld.err")
        if not entry.get("pid_path"):
            entry["pid_path"] = os.path.join(run_dir, "mysqld.pid")
        if not entry.get("socket"):
            entry["socket"] = os.path.join(run_dir, "mysqld.sock")
    return payload


MIGRATIONS: dict[int, Migration] = {
    0: _derive_server_paths,
}


def migrate(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Return *payload* upgraded to :data:`SCHEMA_VERSION`."""
    document = deepcopy(dict(payload))
    raw_version = document.get("schema_version", 0)
    if isinstance(raw_version, bool) or not isinstance(raw_version, int):
        raise StateRegistryError(f"Invalid schema_version {raw_version!r}.")
    if raw_version > SCHEMA_VERSION:
        raise StateRegistryError(
            f"Stable document uses schema version {raw_version}, "
            f"but this stablectl only understands up to {SCHEMA_VERSION}."
        )

    version = raw_version
    while version < SCHEMA_VERSION:
        LOGGER.info("Migrating stable document from schema %d to %d", version, version + 1)
        document = MIGRATIONS[version](document)
        version += 1
        document["schema_version"] = version
    return document


__all__ = ["MIGRATIONS", "SCHEMA_VERSION", "migrate"]
