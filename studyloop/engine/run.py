"""Workflow run state and progress events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from studyloop.core.models import utcnow
from studyloop.errors import WorkflowFailed


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRYING = "retrying"


class RunCancelled(Exception):
    """Raised inside a run's own task once a cancel request is observed."""


@dataclass
class ProgressEvent:
    """
    One progress notification.

    ``step_id`` is None for run-level events (start and the terminal event).
    ``seq`` is the event's position in the run's stream and doubles as the
    resume cursor: resubscribing from ``seq + 1`` continues after this event.
    """

    run_id: str
    seq: int
    step_id: str | None
    status: str
    percent: int
    message: str = ""
    terminal: bool = False
    at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "seq": self.seq,
            "step_id": self.step_id,
            "status": self.status,
            "percent": self.percent,
            "message": self.message,
            "terminal": self.terminal,
            "at": self.at.isoformat(),
        }


@dataclass
class WorkflowRun:
    """
    State of one workflow execution.

    Mutated only by the executor task that owns the run. ``result`` maps step
    id to that step's output and keeps partial output when the run fails.
    """

    run_id: str
    workflow_type: str
    student_id: str
    input: dict[str, Any]
    started_at: datetime = field(default_factory=utcnow)
    status: RunStatus = RunStatus.RUNNING
    step_states: dict[str, StepStatus] = field(default_factory=dict)
    attempts: dict[str, int] = field(default_factory=dict)
    result: dict[str, Any] = field(default_factory=dict)
    error: WorkflowFailed | None = None
    finished_at: datetime | None = None
    output_step: str | None = None
    degraded: list[str] = field(default_factory=list)
    cancel_requested: bool = False

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    @property
    def output(self) -> Any:
        """The workflow's answer: the output step's result, if it got that far."""
        if self.output_step is None:
            return None
        return self.result.get(self.output_step)

    @property
    def error_code(self) -> str | None:
        if self.error is None:
            return None
        return self.error.last_error_code

    def to_dict(self) -> dict[str, Any]:
        """Public view. Error detail is reduced to stable codes."""
        return {
            "run_id": self.run_id,
            "workflow_type": self.workflow_type,
            "student_id": self.student_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "step_states": {k: v.value for k, v in self.step_states.items()},
            "attempts": dict(self.attempts),
            "result": self.result,
            "degraded": list(self.degraded),
            "error": (
                {"code": self.error_code, "failed_step": self.error.failed_step}
                if self.error
                else None
            ),
        }
