"""Orchestrator error taxonomy."""

from __future__ import annotations


class GpumonError(Exception):
    """Base exception for deploy/delete/describe failures."""

    def __init__(self, message: str, details: str | None = None):
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        if self.details:
            return f"{self.message}\n\n{self.details}"
        return self.message


class PreconditionError(GpumonError):
    """A deploy precondition failed. Raised before any mutation."""

    pass


class ProbeError(GpumonError):
    """A read returned something other than a definitive answer.

    Never treated as "absent": doing so could create a duplicate or
    conflicting resource.
    """

    pass


class InstallError(GpumonError):
    """A planned action failed. Later actions are not attempted."""

    pass


class TeardownError(GpumonError):
    """Deleting a single teardown target failed. Never aborts delete."""

    pass
