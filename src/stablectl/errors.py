"""Exception hierarchy shared by the stable, distribution and server modules."""
from __future__ import annotations


class StableError(RuntimeError):
    """Base class for errors raised while managing a stable."""


class StableExistsError(StableError):
    """Raised when creating a stable in a location that already holds one."""


class StableNotFoundError(StableError, FileNotFoundError):
    """Raised when opening a location without a persisted stable."""


class InvalidDistributionError(StableError):
    """Raised when a path is not a supported archive or directory."""


class VersionNotFoundError(StableError):
    """Raised when the version header never defines the server version."""


class DistributionExistsError(StableError):
    """Raised when a distribution name is already taken."""


class DistributionNotFoundError(StableError):
    """Raised when no distribution is registered under a name."""


class InvalidPatternError(StableError):
    """Raised when a server name pattern is malformed."""


class ServerError(StableError):
    """Base class for server instance failures."""


class ServerExistsError(ServerError):
    """Raised when a server name is already registered."""


class ServerNotFoundError(ServerError):
    """Raised when no server is registered under a name."""


class ServerRunningError(ServerError):
    """Raised when starting a server that already has a PID file."""


class ServerNotRunningError(ServerError):
    """Raised when stopping a server without a PID file."""


class NonLocalServerError(ServerError):
    """Raised when a process operation targets a server on another host."""


class FormatFieldError(ServerError):
    """Raised when a format template references an unknown server field."""


__all__ = [
    "DistributionExistsError",
    "DistributionNotFoundError",
    "FormatFieldError",
    "InvalidDistributionError",
    "InvalidPatternError",
    "NonLocalServerError",
    "ServerError",
    "ServerExistsError",
    "ServerNotFoundError",
    "ServerNotRunningError",
    "ServerRunningError",
    "StableError",
    "StableExistsError",
    "StableNotFoundError",
    "VersionNotFoundError",
]
