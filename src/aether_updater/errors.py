"""Exception hierarchy for the update pipeline."""

from __future__ import annotations

from collections.abc import Sequence


class UpdaterError(Exception):
    """Base class for all updater failures."""


class CommandError(UpdaterError):
    """A command exited non-zero or could not be started."""

    def __init__(
        self,
        message: str,
        argv: Sequence[str] = (),
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr


class CommandTimeoutError(CommandError):
    """A command exceeded its wall-clock timeout and was killed."""


class OutputTooLargeError(CommandError):
    """A command produced more output than the capture ceiling allows."""


class ComposeUnavailableError(UpdaterError):
    """Neither ``docker compose`` nor ``docker-compose`` responded."""


class RunnerUnavailableError(UpdaterError):
    """The sandbox runner container could not be started or confirmed."""


class PreconditionError(UpdaterError):
    """A prerequisite check failed before any mutating step ran."""


class StepError(UpdaterError):
    """A pipeline step failed after the rollback target was captured."""

    def __init__(self, step: str, message: str, *, inconsistent_state: bool = False) -> None:
        super().__init__(message)
        self.step = step
        self.inconsistent_state = inconsistent_state


class RollbackError(UpdaterError):
    """Restoring the previous commit failed; an operator has to step in."""


class RetryExhaustedError(UpdaterError):
    """Every attempt of a retried operation failed."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class AuditError(UpdaterError):
    """Base class for audit record failures."""


class AuditRecordNotFoundError(AuditError):
    """No audit record exists with the requested id."""


class AuditRecordFinalizedError(AuditError):
    """The audit record already has ``completed_at`` set and is read-only."""


class InvalidStatusTransitionError(AuditError):
    """The requested status change moves the record backwards."""
