"""Helpers for reading and writing the persisted stable document.

The stable root (``<location>/.stable``) stores its state in ``stable.yml``.
Writes go to a temporary file in the same directory which is then renamed over
the target, so a crash mid-write leaves the previous state intact.

There is no locking: two invocations writing the same stable race and the last
rename wins.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage stablectl state. Install with `pip install stablectl`."
    ) from exc

STATE_FILE = "stable.yml"


class StateRegistryError(RuntimeError):
    """Raised when the persisted state cannot be read or is malformed."""


@dataclass(frozen=True)
class StateRegistry:
    """Read and write YAML documents below a stable root."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    @property
    def state_path(self) -> Path:
        """Return the path of the stable document."""
        return self.path_for(STATE_FILE)

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)

    # Convenience wrappers -------------------------------------------------
    def read_state(self) -> dict[str, Any]:
        """Return the stable document.

        Raises :class:`FileNotFoundError` when the document does not exist and
        :class:`StateRegistryError` when it is not a mapping.
        """
        path = self.state_path
        if not path.exists():
            raise FileNotFoundError(f"No stable state file at {path}")
        value = self.read(STATE_FILE)
        if not isinstance(value, Mapping):
            raise StateRegistryError(f"Stable state file {path} must contain a mapping.")
        return dict(value)

    def write_state(self, payload: Mapping[str, object]) -> None:
        """Persist the stable document."""
        self.write(STATE_FILE, payload)


__all__ = ["STATE_FILE", "StateRegistry", "StateRegistryError"]
