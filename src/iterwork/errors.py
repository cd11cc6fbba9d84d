"""Error taxonomy for iteration lifecycle operations."""

from __future__ import annotations


class IterationError(Exception):
    """Base class for iterwork failures."""

    remedy: str | None = None

    def __init__(self, message: str, *, remedy: str | None = None) -> None:
        super().__init__(message)
        if remedy is not None:
            self.remedy = remedy


# User input errors: reported immediately, nothing attempted.


class InvalidIterationNameError(IterationError, ValueError):
    """Iteration name does not match ``^[a-z0-9-]+$``."""


class IterationNotFoundError(IterationError, ValueError):
    """No registry entry exists for the iteration."""


class IterationExistsError(IterationError, ValueError):
    """A registry entry or directory already exists for the iteration."""


class InvalidTransitionError(IterationError, ValueError):
    """The requested operation is not allowed from the current status."""


class UncommittedChangesError(IterationError, ValueError):
    """The linked tree has uncommitted work and removal was not forced."""


class ProgressItemNotFoundError(IterationError, ValueError):
    """The plan has no phase or task with the given id."""


class TemplateVariableError(IterationError, ValueError):
    """A template references an undeclared variable or a value is missing."""


# External-tool failures treated as fatal.


class CommandError(IterationError, RuntimeError):
    """An external command exited non-zero or timed out."""

    def __init__(
        self,
        message: str,
        *,
        command: str = "",
        output: str = "",
        returncode: int | None = None,
        timed_out: bool = False,
        remedy: str | None = None,
    ) -> None:
        super().__init__(message, remedy=remedy)
        self.command = command
        self.output = output
        self.returncode = returncode
        self.timed_out = timed_out


class WorktreeExistsError(IterationError, RuntimeError):
    """The linked working tree target path already exists."""


class PullRequestError(IterationError, RuntimeError):
    """The code-hosting CLI failed to open a pull request."""


class QualityGateError(IterationError, RuntimeError):
    """A required quality gate failed and the share was not forced."""


class ServiceHealthTimeoutError(IterationError, RuntimeError):
    """A service did not become healthy within its bounded wait."""

    def __init__(self, service: str, seconds: float) -> None:
        super().__init__(f"service {service} did not become healthy within {seconds:g} seconds")
        self.service = service
        self.seconds = seconds


class IterationLockedError(IterationError, RuntimeError):
    """Another invocation holds the iteration's advisory lock."""


class AllocationExhaustedError(IterationError, RuntimeError):
    """Every offset bucket collides with a live iteration."""
