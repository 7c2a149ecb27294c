"""Error taxonomy for the orchestrator.

External-command failures share the structured ``ProcessExecutionError`` shape
so the retry engine can classify them by type alone. Everything else is a
plain exception raised at the boundary where it is detected.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ProcessExecutionError(RuntimeError):
    """Structured process failure with machine-readable code and command context."""

    code: str
    command: tuple[str, ...]
    returncode: int | None = None
    timed_out: bool = False
    attempts: int = 1
    stdout: str | None = None
    stderr: str | None = None
    detail: str | None = None

    def __str__(self) -> str:
        command_text = " ".join(self.command)
        parts = [f"[{self.code}] {command_text}"]
        if self.returncode is not None:
            parts.append(f"(rc={self.returncode})")
        if self.timed_out:
            parts.append("(timed out)")
        if self.attempts > 1:
            parts.append(f"after {self.attempts} attempts")

        message = " ".join(parts)
        detail = self.detail or self.stderr or self.stdout
        if detail:
            return f"{message}: {detail}"
        return message

    @property
    def output(self) -> str:
        """Combined stdout and stderr, for signature matching."""
        return "\n".join(part for part in (self.stdout, self.stderr, self.detail) if part)

    @property
    def retryable(self) -> bool:
        return True


@dataclass(frozen=True, kw_only=True)
class CommandFailedError(ProcessExecutionError):
    """Command exited with a non-zero status."""

    code: str = "PROCESS_NONZERO_EXIT"


@dataclass(frozen=True, kw_only=True)
class RateLimitError(ProcessExecutionError):
    """Command failed with a rate-limit or quota signature in its output."""

    code: str = "RATE_LIMITED"
    retry_after_ms: int | None = None


@dataclass(frozen=True, kw_only=True)
class CommandTimeoutError(ProcessExecutionError):
    """Command exceeded its overall timeout or went silent past its hang window."""

    code: str = "PROCESS_TIMEOUT"
    timed_out: bool = True

    @property
    def retryable(self) -> bool:
        return False


@dataclass(frozen=True, kw_only=True)
class CommandAuthError(ProcessExecutionError):
    """Command stderr matched a credential-failure signature."""

    code: str = "PROCESS_AUTH_FAILURE"

    @property
    def retryable(self) -> bool:
        return False


@dataclass(frozen=True, kw_only=True)
class StartupPreconditionError(ProcessExecutionError):
    """A dependency the executor needs failed to start."""

    code: str = "STARTUP_PRECONDITION_FAILED"

    @property
    def retryable(self) -> bool:
        return False


def is_retryable(exc: BaseException) -> bool:
    """Classify a failure raised by an external-command attempt."""
    if isinstance(exc, ProcessExecutionError):
        return exc.retryable
    return not isinstance(exc, RunCancelledError | StagePreconditionError)


class StageFailedError(RuntimeError):
    """A stage backend reported failure for the current item."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage} failed: {message}")
        self.stage = stage
        self.reason = message


class HygieneGateError(StageFailedError):
    """Commit hygiene checks refused publishing."""

    def __init__(self, findings: list[str]) -> None:
        summary = "; ".join(findings[:5]) or "hygiene check failed"
        super().__init__("publish", f"commit hygiene gate: {summary}")
        self.findings = findings


class StagePreconditionError(RuntimeError):
    """A stage was invoked before its predecessor completed."""

    def __init__(self, stage: str, missing: str) -> None:
        super().__init__(f"Precondition failed: {stage} requires {missing} to be completed")
        self.stage = stage
        self.missing = missing


class TestInfrastructureError(RuntimeError):
    """The target's own build or test tooling is broken independently of the change."""

    __test__ = False

    def __init__(self, item_ref: str, message: str) -> None:
        super().__init__(message)
        self.item_ref = item_ref


class RunCancelledError(RuntimeError):
    """Cooperative cancellation was observed at a stage boundary."""

    def __init__(self, reason: str = "Run cancelled") -> None:
        super().__init__(reason)


class RunConflictError(RuntimeError):
    """The workspace already has a live non-terminal run."""

    def __init__(self, run_id: str, detail: str = "") -> None:
        message = f"Workspace already has an active run: {run_id}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.run_id = run_id


class RunNotFoundError(LookupError):
    """A control command referenced a run that is neither live nor on disk."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"No active run found: {run_id}")
        self.run_id = run_id


class InvalidRunRequestError(ValueError):
    """Start parameters were rejected before any queue work began."""


__all__ = [
    "CommandAuthError",
    "CommandFailedError",
    "CommandTimeoutError",
    "HygieneGateError",
    "InvalidRunRequestError",
    "ProcessExecutionError",
    "RateLimitError",
    "RunCancelledError",
    "RunConflictError",
    "RunNotFoundError",
    "StageFailedError",
    "StagePreconditionError",
    "StartupPreconditionError",
    "TestInfrastructureError",
    "is_retryable",
]
