"""Exception hierarchy shared by the fixloop runtime."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .orchestrator import OrchestratorRun


class FixloopError(RuntimeError):
    """Base class for errors raised by fixloop components."""


class ConfigError(FixloopError):
    """Raised when the configuration file cannot be used."""


class StoreError(FixloopError):
    """Raised when a defect store operation refers to unknown records."""


class InfrastructureError(FixloopError):
    """Tooling failure that makes the current run meaningless.

    Raised when the test process could not start, fixtures could not be
    reset, or the gate could not observe the committed revision.  Never a
    signal about whether a defect is fixed.
    """

    def __init__(self, message: str, *, run: "OrchestratorRun | None" = None, **details: Any) -> None:
        super().__init__(message)
        self.run = run
        self.details = dict(details)


class ArchiveError(InfrastructureError):
    """Raised when a failed attempt cannot be preserved on its archive branch."""


__all__ = [
    "ArchiveError",
    "ConfigError",
    "FixloopError",
    "InfrastructureError",
    "StoreError",
]
