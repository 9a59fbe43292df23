"""
Workflow Executor.

Interprets a WorkflowDefinition for one request:
1. Validate input against the workflow's model (InvalidInput before any step)
2. Run steps in order as one asyncio task per run
3. Retry failed Task steps per their policy, then Fail or Continue; capability
   failures are not retried again here, the gateway has exhausted its attempts
4. Publish progress on the run's channel until the terminal event
5. Keep finished runs for late readers, within a retention window and cap

Cancellation is cooperative: the flag is checked at every step boundary, and
only a pending Wait is interrupted immediately. Capability calls already in
flight finish their current attempt.
"""

from __future__ import annotations

import asyncio
import random
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
from typing import Any

from loguru import logger
from pydantic import ValidationError

from studyloop.config import Settings, get_settings
from studyloop.core.models import utcnow
from studyloop.engine.events import ProgressChannel
from studyloop.engine.run import ProgressEvent, RunCancelled, RunStatus, StepStatus, WorkflowRun
from studyloop.engine.signals import SignalHub
from studyloop.engine.steps import (
    Branch,
    Choice,
    FailurePolicy,
    Parallel,
    Step,
    StepContext,
    Task,
    Wait,
    WorkflowDefinition,
    iter_steps,
)
from studyloop.errors import (
    CapabilityFailure,
    DataInconsistency,
    InvalidInput,
    RunNotFound,
    StudyLoopError,
    WaitTimeout,
    WorkflowFailed,
)
from studyloop.gateway.capabilities import Capabilities
from studyloop.gateway.retry import RetryPolicy
from studyloop.store.proficiency_store import ProficiencyStore


def _is_retryable(exc: BaseException) -> bool:
    # Capability failures have already been through the gateway's retries
    if isinstance(exc, CapabilityFailure):
        return False
    # Unknown exceptions from step bodies are treated as transient
    return getattr(exc, "retryable", True)


def _validation_fields(exc: ValidationError) -> list[str]:
    return [".".join(str(part) for part in err["loc"]) or "input" for err in exc.errors()]


class WorkflowExecutor:
    """Runs workflow definitions, one asyncio task per run."""

    def __init__(
        self,
        definitions: Mapping[str, WorkflowDefinition],
        store: ProficiencyStore,
        capabilities: Capabilities,
        settings: Settings | None = None,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.definitions = {str(k): v for k, v in definitions.items()}
        self.store = store
        self.capabilities = capabilities
        self.settings = settings or get_settings()
        self.retry = retry or RetryPolicy.from_settings(self.settings)
        self.signals = SignalHub()
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._clock = clock

        self._runs: dict[str, WorkflowRun] = {}
        self._channels: dict[str, ProgressChannel] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._settled: dict[str, set[str]] = {}
        self._totals: dict[str, int] = {}
        # run_id -> clock reading at finish, oldest first
        self._finished: dict[str, float] = {}

    # =========================================================================
    # Public surface
    # =========================================================================

    async def start(self, workflow_type: str, payload: Mapping[str, Any]) -> str:
        """
        Validate input and begin a run in the background.

        Returns:
            run_id

        Raises:
            InvalidInput: Unknown workflow type, or input failing its schema or
                the workflow's precheck
        """
        definition = self.definitions.get(str(workflow_type))
        if definition is None:
            raise InvalidInput(f"unknown workflow type {workflow_type!r}", ["type"])

        try:
            data = definition.input_model.model_validate(dict(payload))
        except ValidationError as e:
            fields = _validation_fields(e)
            logger.info("Rejected {} input: invalid fields {}", definition.type, fields)
            raise InvalidInput(f"invalid input for {definition.type}", fields) from e
        if definition.precheck is not None:
            await definition.precheck(self.store, data)

        self._prune()
        run = WorkflowRun(
            run_id=uuid.uuid4().hex,
            workflow_type=definition.type,
            student_id=getattr(data, "student_id", ""),
            input=data.model_dump(mode="json"),
            step_states={step_id: StepStatus.PENDING for step_id in definition.step_ids},
            output_step=definition.output_step,
        )
        self._runs[run.run_id] = run
        self._channels[run.run_id] = ProgressChannel(run.run_id)
        self._settled[run.run_id] = set()
        self._totals[run.run_id] = max(1, len(definition.step_ids))

        self._tasks[run.run_id] = asyncio.create_task(
            self._execute(definition, run, data), name=f"workflow-{run.run_id}"
        )
        return run.run_id

    def get_run(self, run_id: str) -> WorkflowRun:
        try:
            return self._runs[run_id]
        except KeyError:
            raise RunNotFound(run_id) from None

    def runs(self) -> list[WorkflowRun]:
        return list(self._runs.values())

    def subscribe(
        self,
        run_id: str,
        replay: bool = False,
        cursor: int | None = None,
    ) -> AsyncIterator[ProgressEvent]:
        """
        Progress events for a run.

        Without ``replay`` or ``cursor`` the stream starts at the subscribe
        point; a subscriber arriving after the run finished still receives
        the terminal event.
        """
        self.get_run(run_id)
        channel = self._channels[run_id]
        if cursor is None:
            if replay:
                cursor = 0
            elif channel.closed:
                cursor = channel.head - 1
            else:
                cursor = channel.head
        return channel.stream(cursor)

    def cancel(self, run_id: str) -> bool:
        """
        Request cancellation.

        Returns:
            False if the run had already finished
        """
        run = self.get_run(run_id)
        if run.terminal:
            return False
        if not run.cancel_requested:
            run.cancel_requested = True
            logger.info("Cancel requested for run {}", run_id)
            self.signals.interrupt(run_id, RunCancelled(run_id))
        return True

    def deliver_signal(
        self,
        run_id: str,
        step_id: str,
        payload: Any = None,
        error: str | None = None,
    ) -> bool:
        """Resume the Wait step ``step_id`` of a running run."""
        run = self.get_run(run_id)
        if run.terminal:
            raise InvalidInput(f"run {run_id} is {run.status.value}", ["run_id"])
        if step_id not in run.step_states:
            raise InvalidInput(f"run {run_id} has no step {step_id}", ["step_id"])
        return self.signals.deliver(run_id, step_id, payload, error)

    async def wait(self, run_id: str, timeout: float | None = None) -> WorkflowRun:
        """Block until the run is terminal and return it."""
        run = self.get_run(run_id)
        task = self._tasks.get(run_id)
        if task is not None and not task.done():
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return run

    async def shutdown(self) -> None:
        """Hard-stop every run still in flight."""
        pending = [t for t in self._tasks.values() if not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    # =========================================================================
    # Run loop
    # =========================================================================

    async def _execute(self, definition: WorkflowDefinition, run: WorkflowRun, data) -> None:
        logger.info("Run {} ({}) started for {}", run.run_id, run.workflow_type, run.student_id)
        self._publish(run, None, RunStatus.RUNNING.value, "started")
        try:
            await self._run_steps(definition.steps, run, data)
        except RunCancelled:
            run.status = RunStatus.CANCELLED
        except asyncio.CancelledError:
            run.status = RunStatus.CANCELLED
            raise
        except WorkflowFailed as exc:
            run.status = RunStatus.FAILED
            run.error = exc
        except Exception as exc:  # Executor boundary - a bug must still end the run
            logger.exception("Run {} crashed", run.run_id)
            run.status = RunStatus.FAILED
            run.error = WorkflowFailed(run.run_id, "executor", exc)
        else:
            run.status = RunStatus.SUCCEEDED
        finally:
            if run.status is RunStatus.RUNNING:
                run.status = RunStatus.CANCELLED
            self._finish(run)

    def _finish(self, run: WorkflowRun) -> None:
        run.finished_at = utcnow()
        self.signals.abandon(run.run_id)

        if run.status is RunStatus.FAILED:
            logger.warning(
                "Run {} failed at step {} ({})",
                run.run_id,
                run.error.failed_step,
                run.error_code,
            )
            message = run.error_code
        else:
            logger.info("Run {} {}", run.run_id, run.status.value)
            message = ""
        percent = 100 if run.status is RunStatus.SUCCEEDED else self._percent(run)
        self._channels[run.run_id].publish(
            None, run.status.value, percent, message, terminal=True
        )
        self._settled.pop(run.run_id, None)
        self._finished[run.run_id] = self._clock()
        self._prune()

    def _prune(self) -> None:
        """Forget finished runs older than the retention window or beyond the cap."""
        horizon = self._clock() - self.settings.finished_run_ttl_seconds
        while self._finished:
            run_id, finished_at = next(iter(self._finished.items()))
            if finished_at > horizon and len(self._finished) <= self.settings.finished_run_limit:
                break
            del self._finished[run_id]
            self._runs.pop(run_id, None)
            self._channels.pop(run_id, None)
            self._tasks.pop(run_id, None)
            self._totals.pop(run_id, None)
            logger.debug("Forgot finished run {}", run_id)

    async def _run_steps(self, steps: Sequence[Step], run: WorkflowRun, data) -> Any:
        output = None
        for step in steps:
            if run.cancel_requested:
                raise RunCancelled(run.run_id)
            output = await self._run_step(step, run, data)
        return output

    async def _run_step(self, step: Step, run: WorkflowRun, data) -> Any:
        if isinstance(step, Task):
            return await self._run_task(step, run, data)
        if isinstance(step, Choice):
            return await self._run_choice(step, run, data)
        if isinstance(step, Parallel):
            return await self._run_parallel(step, run, data)
        if isinstance(step, Wait):
            return await self._run_wait(step, run, data)
        raise TypeError(f"unsupported step {step!r}")

    # =========================================================================
    # Step kinds
    # =========================================================================

    async def _run_task(self, step: Task, run: WorkflowRun, data) -> Any:
        policy = step.retry or self.retry
        self._transition(run, step.id, StepStatus.RUNNING, step.message)
        last_error: BaseException | None = None

        for attempt in range(1, policy.attempts + 1):
            run.attempts[step.id] = attempt
            try:
                output = await step.action(self._context(run, data, step.id, attempt))
            except Exception as exc:  # Step boundary - every failure goes through the policy
                last_error = exc
            else:
                run.result[step.id] = output
                self._transition(run, step.id, StepStatus.SUCCEEDED)
                return output

            if not _is_retryable(last_error) or attempt == policy.attempts:
                break
            if run.cancel_requested:
                self._transition(run, step.id, StepStatus.FAILED)
                raise RunCancelled(run.run_id)

            delay = policy.delay(attempt, self._rng)
            logger.warning(
                "Run {} step {} attempt {}/{} failed: {}; retrying in {:.1f}s",
                run.run_id,
                step.id,
                attempt,
                policy.attempts,
                type(last_error).__name__,
                delay,
            )
            self._transition(run, step.id, StepStatus.RETRYING, f"attempt {attempt + 1}")
            await self._sleep(delay)
            self._transition(run, step.id, StepStatus.RUNNING)

        self._transition(run, step.id, StepStatus.FAILED, getattr(last_error, "code", ""))
        return self._settle_failure(step, run, data, last_error)

    async def _run_choice(self, step: Choice, run: WorkflowRun, data) -> Any:
        self._transition(run, step.id, StepStatus.RUNNING, step.message)
        run.attempts[step.id] = 1
        try:
            taken = bool(step.predicate(self._context(run, data, step.id)))
        except Exception as exc:  # Predicate bugs fail the run like any step failure
            self._transition(run, step.id, StepStatus.FAILED)
            raise WorkflowFailed(run.run_id, step.id, exc) from exc

        run.result[step.id] = taken
        self._transition(run, step.id, StepStatus.SUCCEEDED)
        chosen, skipped = (step.if_true, step.if_false) if taken else (step.if_false, step.if_true)
        self._skip(run, skipped)
        return await self._run_steps(chosen, run, data)

    async def _run_parallel(self, step: Parallel, run: WorkflowRun, data) -> Any:
        self._transition(run, step.id, StepStatus.RUNNING, step.message)
        run.attempts[step.id] = 1

        tasks = [
            asyncio.create_task(self._run_steps(branch.steps, run, data))
            for branch in step.branches
        ]
        if step.cancel_on_failure:
            await self._until_required_failure(step.branches, tasks)
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        branch_outputs: dict[str, Any] = {}
        failures: list[tuple[Branch, BaseException]] = []
        cancelled = False
        for branch, outcome in zip(step.branches, outcomes):
            if isinstance(outcome, RunCancelled):
                cancelled = True
            elif isinstance(outcome, BaseException):
                failures.append((branch, outcome))
            else:
                branch_outputs[branch.name] = outcome

        for branch, error in failures:
            if branch.optional:
                logger.info("Run {} optional branch {}.{} failed", run.run_id, step.id, branch.name)
                run.degraded.append(f"{step.id}.{branch.name}")
                branch_outputs[branch.name] = None

        if cancelled:
            raise RunCancelled(run.run_id)

        required = [(b, e) for b, e in failures if not b.optional]
        if not required:
            run.result[step.id] = branch_outputs
            self._transition(run, step.id, StepStatus.SUCCEEDED)
            return branch_outputs

        self._transition(run, step.id, StepStatus.FAILED)
        _, error = required[0]
        cause = error.last_error if isinstance(error, WorkflowFailed) else error
        if isinstance(cause, asyncio.CancelledError):
            cause = next(
                (e for _, e in required if not isinstance(e, asyncio.CancelledError)), cause
            )
            if isinstance(cause, WorkflowFailed):
                cause = cause.last_error
        return self._settle_failure(step, run, data, cause, partial=branch_outputs)

    async def _until_required_failure(
        self,
        branches: Sequence[Branch],
        tasks: list[asyncio.Task],
    ) -> None:
        """Wait for the branches, cancelling the rest once a required one fails."""
        required = {task for task, branch in zip(tasks, branches) if not branch.optional}
        pending = set(tasks)
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_EXCEPTION)
            failed = [
                t
                for t in done
                if t in required
                and not t.cancelled()
                and t.exception() is not None
                and not isinstance(t.exception(), RunCancelled)
            ]
            if failed:
                for task in pending:
                    task.cancel()
                return

    async def _run_wait(self, step: Wait, run: WorkflowRun, data) -> Any:
        ctx = self._context(run, data, step.id)
        timeout = step.timeout(ctx) if callable(step.timeout) else step.timeout
        self._transition(run, step.id, StepStatus.RUNNING, step.message or "waiting")
        run.attempts[step.id] = 1

        future = self.signals.expect(run.run_id, step.id)
        try:
            payload = await asyncio.wait_for(future, timeout)
        except RunCancelled:
            self._transition(run, step.id, StepStatus.FAILED)
            raise
        except asyncio.TimeoutError:
            error: BaseException = WaitTimeout(step.id, timeout)
        except StudyLoopError as exc:
            error = exc
        else:
            run.result[step.id] = payload
            self._transition(run, step.id, StepStatus.SUCCEEDED)
            return payload
        finally:
            self.signals.discard(run.run_id, step.id)

        logger.warning("Run {} wait {} failed: {}", run.run_id, step.id, error)
        self._transition(run, step.id, StepStatus.FAILED, getattr(error, "code", ""))
        return self._settle_failure(step, run, data, error)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _settle_failure(
        self,
        step: Task | Parallel | Wait,
        run: WorkflowRun,
        data,
        error: BaseException | None,
        partial: Any = None,
    ) -> Any:
        """Apply the step's failure policy after it has been marked Failed."""
        if partial is not None:
            run.result[step.id] = partial
        if step.on_failure is FailurePolicy.FAIL or isinstance(error, DataInconsistency):
            raise WorkflowFailed(run.run_id, step.id, error)

        fallback = step.fallback
        if callable(fallback):
            fallback = fallback(self._context(run, data, step.id), error)
        run.result[step.id] = fallback
        run.degraded.append(step.id)
        logger.warning(
            "Run {} step {} degraded to fallback ({})",
            run.run_id,
            step.id,
            getattr(error, "code", type(error).__name__),
        )
        return fallback

    def _context(self, run: WorkflowRun, data, step_id: str, attempt: int = 1) -> StepContext:
        return StepContext(
            run=run,
            input=data,
            store=self.store,
            capabilities=self.capabilities,
            settings=self.settings,
            step_id=step_id,
            attempt=attempt,
        )

    def _transition(
        self,
        run: WorkflowRun,
        step_id: str,
        status: StepStatus,
        message: str = "",
    ) -> None:
        run.step_states[step_id] = status
        if status in (StepStatus.SUCCEEDED, StepStatus.FAILED):
            self._settled[run.run_id].add(step_id)
        self._publish(run, step_id, status.value, message)

    def _skip(self, run: WorkflowRun, steps: Sequence[Step]) -> None:
        # Steps on the branch not taken stay Pending but count as settled
        self._settled[run.run_id].update(step.id for step in iter_steps(steps))

    def _percent(self, run: WorkflowRun) -> int:
        settled = len(self._settled.get(run.run_id, ()))
        return min(100, int(100 * settled / self._totals[run.run_id]))

    def _publish(self, run: WorkflowRun, step_id: str | None, status: str, message: str) -> None:
        self._channels[run.run_id].publish(step_id, status, self._percent(run), message)
