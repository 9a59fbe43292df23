"""
Workflow engine.

- steps: declarative step kinds (Task, Choice, Parallel, Wait)
- run: run state, step states, progress events
- events: per-run progress channel with resumable cursors
- signals: completion signals for Wait steps
- executor: the interpreter that owns every run
"""

from studyloop.engine.executor import WorkflowExecutor
from studyloop.engine.run import ProgressEvent, RunStatus, StepStatus, WorkflowRun
from studyloop.engine.steps import (
    Branch,
    Choice,
    FailurePolicy,
    Parallel,
    StepContext,
    Task,
    Wait,
    WorkflowDefinition,
)

__all__ = [
    "Branch",
    "Choice",
    "FailurePolicy",
    "Parallel",
    "ProgressEvent",
    "RunStatus",
    "StepContext",
    "StepStatus",
    "Task",
    "Wait",
    "WorkflowDefinition",
    "WorkflowExecutor",
    "WorkflowRun",
]
