"""
Error taxonomy for the orchestration engine.

Every error carries a stable ``code``. Only the code and a correlation id
ever leave the engine; detail stays in the logs.
"""

from __future__ import annotations

from typing import Any


class StudyLoopError(Exception):
    """Base class for all engine errors."""

    code = "internal_error"
    retryable = False


class InvalidInput(StudyLoopError):
    """Caller error. Surfaced immediately, never retried."""

    code = "invalid_input"

    def __init__(self, message: str, fields: list[str] | None = None):
        super().__init__(message)
        self.fields = fields or []


class CapabilityFailure(StudyLoopError):
    """Transient failure of an external capability."""

    code = "capability_failure"
    retryable = True

    UNAVAILABLE = "unavailable"
    RATE_LIMITED = "rate_limited"
    MALFORMED = "malformed"

    def __init__(self, capability: str, message: str = "", kind: str = UNAVAILABLE):
        super().__init__(message or f"{capability} failed ({kind})")
        self.capability = capability
        self.kind = kind


class CapabilityTimeout(CapabilityFailure):
    """Deadline elapsed; retried like any other capability failure."""

    code = "timeout"

    def __init__(self, capability: str, message: str = ""):
        super().__init__(capability, message or f"{capability} timed out", kind="timeout")


class CircuitOpen(CapabilityFailure):
    """Breaker is open; the call was rejected without reaching the network."""

    code = "circuit_open"
    retryable = False

    def __init__(self, capability: str, retry_after: float = 0.0):
        super().__init__(capability, f"circuit open for {capability}", kind="circuit_open")
        self.retry_after = retry_after


class WaitTimeout(StudyLoopError):
    """A Wait step's completion signal did not arrive before its deadline."""

    code = "timeout"
    retryable = False

    def __init__(self, step_id: str, timeout: float):
        super().__init__(f"step {step_id} received no completion signal within {timeout}s")
        self.step_id = step_id
        self.timeout = timeout


class DataInconsistency(StudyLoopError):
    """Persisted state does not match what was written. Fatal."""

    code = "data_inconsistency"


class RunNotFound(StudyLoopError, LookupError):
    """No workflow run with the given id."""

    code = "run_not_found"

    def __init__(self, run_id: str):
        super().__init__(f"unknown run {run_id}")
        self.run_id = run_id


class WorkflowFailed(StudyLoopError):
    """Terminal run failure after a step exhausted its retries."""

    code = "workflow_failed"

    def __init__(self, run_id: str, failed_step: str, last_error: BaseException | None):
        super().__init__(f"run {run_id} failed at step {failed_step}")
        self.run_id = run_id
        self.failed_step = failed_step
        self.last_error = last_error

    @property
    def last_error_code(self) -> str:
        return getattr(self.last_error, "code", "internal_error")


def public_error(exc: BaseException, correlation_id: str) -> dict[str, Any]:
    """Build the user-visible error envelope: a stable code and a correlation id."""
    code = exc.code if isinstance(exc, StudyLoopError) else "internal_error"
    return {"code": code, "correlation_id": correlation_id}
