"""
Declarative step graph.

A workflow is an ordered list of steps. Four step kinds exist:
- Task: one awaited action (capability call, adaptation rule, store write)
- Choice: pick one of two step lists from a predicate over run state
- Parallel: branches run concurrently; the step settles once all have
- Wait: suspend until a correlated completion signal or a deadline
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterator, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

from pydantic import BaseModel

from studyloop.config import Settings
from studyloop.gateway.retry import RetryPolicy

if TYPE_CHECKING:
    from studyloop.engine.run import WorkflowRun
    from studyloop.gateway.capabilities import Capabilities
    from studyloop.store.proficiency_store import ProficiencyStore


class FailurePolicy(str, Enum):
    """What a step does once it has exhausted its retries."""

    FAIL = "fail"
    CONTINUE = "continue"


@dataclass
class StepContext:
    """Everything a step action may read or call."""

    run: WorkflowRun
    input: BaseModel
    store: ProficiencyStore
    capabilities: Capabilities
    settings: Settings
    step_id: str
    attempt: int = 1

    @property
    def student_id(self) -> str:
        return self.run.student_id

    @property
    def outputs(self) -> dict[str, Any]:
        """Outputs of the steps that have settled so far, by step id."""
        return self.run.result

    def output(self, step_id: str, default: Any = None) -> Any:
        return self.run.result.get(step_id, default)


StepAction = Callable[[StepContext], Awaitable[Any]]
# Input checks that need stored state, run before the run is created
Precheck = Callable[["ProficiencyStore", BaseModel], Awaitable[None]]
Predicate = Callable[[StepContext], bool]
# A fallback is either a plain value or fallback(ctx, error) -> value
Fallback = Any


@dataclass
class Task:
    id: str
    action: StepAction
    retry: RetryPolicy | None = None  # None uses the executor default
    on_failure: FailurePolicy = FailurePolicy.FAIL
    fallback: Fallback = None
    message: str = ""


@dataclass
class Choice:
    id: str
    predicate: Predicate
    if_true: list[Step] = field(default_factory=list)
    if_false: list[Step] = field(default_factory=list)
    message: str = ""


@dataclass
class Branch:
    name: str
    steps: list[Step]
    optional: bool = False


@dataclass
class Parallel:
    id: str
    branches: list[Branch]
    on_failure: FailurePolicy = FailurePolicy.FAIL
    fallback: Fallback = None
    cancel_on_failure: bool = False
    message: str = ""


@dataclass
class Wait:
    """
    Suspend until ``deliver_signal(run_id, id, ...)`` is called.

    ``timeout`` is seconds, or a callable computing it from the step context.
    """

    id: str
    timeout: float | Callable[[StepContext], float]
    on_failure: FailurePolicy = FailurePolicy.FAIL
    fallback: Fallback = None
    message: str = ""


Step = Union[Task, Choice, Parallel, Wait]


def iter_steps(steps: Sequence[Step]) -> Iterator[Step]:
    """Depth-first walk over a step list, nested branches included."""
    for step in steps:
        yield step
        if isinstance(step, Choice):
            yield from iter_steps(step.if_true)
            yield from iter_steps(step.if_false)
        elif isinstance(step, Parallel):
            for branch in step.branches:
                yield from iter_steps(branch.steps)


@dataclass
class WorkflowDefinition:
    """One member of the closed set of workflows the router can select."""

    type: str
    input_model: type[BaseModel]
    steps: list[Step]
    output_step: str | None = None
    description: str = ""
    precheck: Precheck | None = None

    def __post_init__(self):
        seen: set[str] = set()
        for step in iter_steps(self.steps):
            if step.id in seen:
                raise ValueError(f"duplicate step id {step.id!r} in workflow {self.type}")
            seen.add(step.id)
        if self.output_step is not None and self.output_step not in seen:
            raise ValueError(f"output step {self.output_step!r} not in workflow {self.type}")

    @property
    def step_ids(self) -> list[str]:
        return [step.id for step in iter_steps(self.steps)]
