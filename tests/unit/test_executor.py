"""
Unit tests for the workflow executor.

Definitions here are small synthetic workflows so each step kind and
failure policy can be exercised in isolation.
"""

import asyncio
import time

import pytest
import pytest_asyncio

from studyloop.engine import (
    Branch,
    Choice,
    FailurePolicy,
    Parallel,
    RunStatus,
    StepStatus,
    Task,
    Wait,
    WorkflowDefinition,
    WorkflowExecutor,
)
from studyloop.errors import (
    CapabilityFailure,
    DataInconsistency,
    InvalidInput,
    RunNotFound,
)
from studyloop.gateway.capabilities import Capabilities
from studyloop.gateway.gateway import CapabilityGateway
from studyloop.gateway.retry import RetryPolicy
from studyloop.workflows.inputs import WorkflowInput


class EchoInput(WorkflowInput):
    text: str = "hello"


def definition(*steps, output_step=None):
    return WorkflowDefinition("echo", EchoInput, list(steps), output_step=output_step)


async def returns(value):
    return value


def constant(value):
    async def action(ctx):
        return value

    return action


def failing(exc):
    async def action(ctx):
        raise exc

    return action


async def until(predicate):
    """Let the event loop run until ``predicate`` holds."""
    for _ in range(200):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never reached")


@pytest_asyncio.fixture
async def make_executor(store, settings, fake_capabilities, sleep):
    gateway = CapabilityGateway(
        fake_capabilities.handlers(), settings=settings, retry=RetryPolicy.single()
    )
    created = []

    def make(workflow, clock=time.monotonic, **overrides):
        executor = WorkflowExecutor(
            {workflow.type: workflow},
            store,
            Capabilities(gateway),
            settings=settings.model_copy(update=overrides) if overrides else settings,
            retry=RetryPolicy(attempts=3, base_delay=1.0, jitter=0.0),
            sleep=sleep,
            clock=clock,
        )
        created.append(executor)
        return executor

    yield make
    for executor in created:
        await executor.shutdown()


async def run_to_end(executor, payload=None):
    run_id = await executor.start("echo", payload or {"student_id": "alice"})
    return await executor.wait(run_id, timeout=5)


class TestStart:
    """Tests for input validation and run creation."""

    @pytest.mark.asyncio
    async def test_invalid_input_rejected_before_any_step(self, make_executor):
        calls = []

        async def record(ctx):
            calls.append(ctx.step_id)

        executor = make_executor(definition(Task("only", record)))

        with pytest.raises(InvalidInput) as exc_info:
            await executor.start("echo", {"student_id": "  "})

        assert exc_info.value.fields == ["student_id"]
        assert executor.runs() == []
        assert calls == []

    @pytest.mark.asyncio
    async def test_unknown_workflow_type(self, make_executor):
        executor = make_executor(definition(Task("only", constant(1))))

        with pytest.raises(InvalidInput):
            await executor.start("nope", {"student_id": "alice"})

    @pytest.mark.asyncio
    async def test_steps_start_pending(self, make_executor):
        executor = make_executor(definition(Task("a", constant(1)), Task("b", constant(2))))

        run_id = await executor.start("echo", {"student_id": "alice"})
        run = executor.get_run(run_id)

        assert run.status == RunStatus.RUNNING
        assert run.step_states == {"a": StepStatus.PENDING, "b": StepStatus.PENDING}
        await executor.wait(run_id)

    @pytest.mark.asyncio
    async def test_unknown_run(self, make_executor):
        executor = make_executor(definition(Task("a", constant(1))))

        with pytest.raises(RunNotFound):
            executor.get_run("missing")


class TestTasks:
    """Tests for sequencing, retries and failure policies."""

    @pytest.mark.asyncio
    async def test_outputs_flow_between_steps(self, make_executor):
        async def shout(ctx):
            return f"{ctx.output('greet')} {ctx.input.text.upper()}"

        executor = make_executor(
            definition(Task("greet", constant("hi")), Task("shout", shout), output_step="shout")
        )

        run = await run_to_end(executor, {"student_id": "alice", "text": "there"})

        assert run.status == RunStatus.SUCCEEDED
        assert run.output == "hi THERE"
        assert run.attempts == {"greet": 1, "shout": 1}
        assert run.finished_at is not None

    @pytest.mark.asyncio
    async def test_transient_failures_retried_with_backoff(self, make_executor, sleep):
        outcomes = [RuntimeError("flaky"), RuntimeError("flaky"), "ok"]

        async def flaky(ctx):
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        executor = make_executor(definition(Task("flaky", flaky), output_step="flaky"))

        run = await run_to_end(executor)

        assert run.status == RunStatus.SUCCEEDED
        assert run.attempts["flaky"] == 3
        assert sleep.delays == [1.0, 2.0]
        statuses = [e.status for e in executor._channels[run.run_id].events if e.step_id]
        assert statuses.count("retrying") == 2

    @pytest.mark.asyncio
    async def test_invalid_input_not_retried(self, make_executor):
        executor = make_executor(definition(Task("strict", failing(InvalidInput("bad")))))

        run = await run_to_end(executor)

        assert run.status == RunStatus.FAILED
        assert run.attempts["strict"] == 1
        assert run.error.failed_step == "strict"
        assert run.error_code == "invalid_input"

    @pytest.mark.asyncio
    async def test_capability_failure_escalates_without_step_retry(self, make_executor, sleep):
        executor = make_executor(
            definition(
                Task("call", failing(CapabilityFailure("generate_text"))),
                Task("after", constant(1)),
            )
        )

        run = await run_to_end(executor)

        assert run.status == RunStatus.FAILED
        # The gateway has already retried; the step applies its policy at once
        assert run.attempts["call"] == 1
        assert sleep.delays == []
        assert run.step_states["call"] == StepStatus.FAILED
        assert run.step_states["after"] == StepStatus.PENDING
        assert run.to_dict()["error"] == {"code": "capability_failure", "failed_step": "call"}

    @pytest.mark.asyncio
    async def test_continue_uses_fallback(self, make_executor):
        executor = make_executor(
            definition(
                Task(
                    "optional",
                    failing(CapabilityFailure("search_index")),
                    on_failure=FailurePolicy.CONTINUE,
                    fallback=[],
                ),
                Task("after", lambda ctx: returns(ctx.output("optional"))),
                output_step="after",
            )
        )

        run = await run_to_end(executor)

        assert run.status == RunStatus.SUCCEEDED
        assert run.output == []
        assert run.step_states["optional"] == StepStatus.FAILED
        assert run.degraded == ["optional"]

    @pytest.mark.asyncio
    async def test_callable_fallback_sees_the_error(self, make_executor):
        executor = make_executor(
            definition(
                Task(
                    "optional",
                    failing(CapabilityFailure("search_index")),
                    on_failure=FailurePolicy.CONTINUE,
                    fallback=lambda ctx, error: error.code,
                ),
                output_step="optional",
            )
        )

        run = await run_to_end(executor)

        assert run.output == "capability_failure"

    @pytest.mark.asyncio
    async def test_data_inconsistency_ignores_continue(self, make_executor):
        executor = make_executor(
            definition(
                Task(
                    "write",
                    failing(DataInconsistency("read-back mismatch")),
                    on_failure=FailurePolicy.CONTINUE,
                    fallback=0.5,
                )
            )
        )

        run = await run_to_end(executor)

        assert run.status == RunStatus.FAILED
        assert run.attempts["write"] == 1
        assert run.error_code == "data_inconsistency"

    @pytest.mark.asyncio
    async def test_crashing_predicate_fails_the_run(self, make_executor):
        executor = make_executor(definition(Choice("pick", lambda ctx: 1 / 0)))

        run = await run_to_end(executor)

        assert run.status == RunStatus.FAILED
        assert run.error.failed_step == "pick"


class TestChoice:
    """Tests for conditional branching."""

    @pytest.mark.asyncio
    async def test_only_chosen_branch_runs(self, make_executor):
        executor = make_executor(
            definition(
                Choice(
                    "long_text",
                    lambda ctx: len(ctx.input.text) > 10,
                    if_true=[Task("summarize", constant("short"))],
                    if_false=[Task("keep", constant("as is"))],
                ),
            )
        )

        run = await run_to_end(executor)

        assert run.result["long_text"] is False
        assert run.step_states["keep"] == StepStatus.SUCCEEDED
        assert run.step_states["summarize"] == StepStatus.PENDING
        events = executor._channels[run.run_id].events
        assert events[-1].percent == 100


class TestParallel:
    """Tests for concurrent branches."""

    @pytest.mark.asyncio
    async def test_required_failure_keeps_sibling_output(self, make_executor):
        executor = make_executor(
            definition(
                Parallel(
                    "both",
                    branches=[
                        Branch("ok", [Task("left", constant(1))]),
                        Branch("bad", [Task("right", failing(CapabilityFailure("render_job")))]),
                    ],
                ),
                Task("after", constant(2)),
            )
        )

        run = await run_to_end(executor)

        assert run.status == RunStatus.FAILED
        assert run.error.failed_step == "both"
        assert run.error_code == "capability_failure"
        assert run.step_states["left"] == StepStatus.SUCCEEDED
        assert run.step_states["right"] == StepStatus.FAILED
        assert run.step_states["both"] == StepStatus.FAILED
        assert run.step_states["after"] == StepStatus.PENDING
        assert run.result["left"] == 1
        assert run.result["both"] == {"ok": 1}

    @pytest.mark.asyncio
    async def test_optional_branch_degrades(self, make_executor):
        executor = make_executor(
            definition(
                Parallel(
                    "both",
                    branches=[
                        Branch("ok", [Task("left", constant(1))]),
                        Branch(
                            "extra",
                            [Task("right", failing(CapabilityFailure("render_job")))],
                            optional=True,
                        ),
                    ],
                ),
                output_step="both",
            )
        )

        run = await run_to_end(executor)

        assert run.status == RunStatus.SUCCEEDED
        assert run.output == {"ok": 1, "extra": None}
        assert run.degraded == ["both.extra"]

    @pytest.mark.asyncio
    async def test_branches_run_concurrently(self, make_executor):
        started = []
        release = asyncio.Event()

        def gated(name):
            async def action(ctx):
                started.append(name)
                await release.wait()
                return name

            return action

        executor = make_executor(
            definition(
                Parallel(
                    "both",
                    branches=[
                        Branch("a", [Task("a", gated("a"))]),
                        Branch("b", [Task("b", gated("b"))]),
                    ],
                ),
                output_step="both",
            )
        )
        run_id = await executor.start("echo", {"student_id": "alice"})

        await until(lambda: len(started) == 2)
        release.set()
        run = await executor.wait(run_id, timeout=5)

        assert run.output == {"a": "a", "b": "b"}

    @pytest.mark.asyncio
    async def test_cancel_on_failure_stops_siblings(self, make_executor):
        never = asyncio.Event()

        async def slow(ctx):
            await never.wait()

        executor = make_executor(
            definition(
                Parallel(
                    "both",
                    branches=[
                        Branch("slow", [Task("slow", slow)]),
                        Branch("bad", [Task("bad", failing(InvalidInput("bad")))]),
                    ],
                    cancel_on_failure=True,
                ),
            )
        )

        run = await run_to_end(executor)

        assert run.status == RunStatus.FAILED
        assert run.error_code == "invalid_input"


class TestWait:
    """Tests for suspension on completion signals."""

    @pytest.mark.asyncio
    async def test_signal_resumes_wait(self, make_executor):
        executor = make_executor(definition(Wait("render", timeout=5), output_step="render"))
        run_id = await executor.start("echo", {"student_id": "alice"})
        run = executor.get_run(run_id)

        await until(lambda: run.step_states["render"] == StepStatus.RUNNING)
        assert executor.deliver_signal(run_id, "render", {"url": "https://cdn/x.mp4"}) is True
        await executor.wait(run_id, timeout=5)

        assert run.status == RunStatus.SUCCEEDED
        assert run.output == {"url": "https://cdn/x.mp4"}

    @pytest.mark.asyncio
    async def test_early_signal_is_held(self, make_executor):
        executor = make_executor(
            definition(Task("submit", constant("job-1")), Wait("render", timeout=5), output_step="render")
        )
        run_id = await executor.start("echo", {"student_id": "alice"})

        assert executor.deliver_signal(run_id, "render", "done") is False
        run = await executor.wait(run_id, timeout=5)

        assert run.status == RunStatus.SUCCEEDED
        assert run.output == "done"

    @pytest.mark.asyncio
    async def test_timeout_fails_with_timeout_code(self, make_executor):
        executor = make_executor(definition(Wait("render", timeout=0.01)))

        run = await run_to_end(executor)

        assert run.status == RunStatus.FAILED
        assert run.error_code == "timeout"
        assert run.error.failed_step == "render"

    @pytest.mark.asyncio
    async def test_timeout_with_continue(self, make_executor):
        executor = make_executor(
            definition(
                Wait("render", timeout=0.01, on_failure=FailurePolicy.CONTINUE, fallback="none"),
                output_step="render",
            )
        )

        run = await run_to_end(executor)

        assert run.status == RunStatus.SUCCEEDED
        assert run.output == "none"
        assert run.degraded == ["render"]

    @pytest.mark.asyncio
    async def test_error_signal_fails_wait(self, make_executor):
        executor = make_executor(definition(Wait("render", timeout=5)))
        run_id = await executor.start("echo", {"student_id": "alice"})
        run = executor.get_run(run_id)

        await until(lambda: run.step_states["render"] == StepStatus.RUNNING)
        executor.deliver_signal(run_id, "render", error="renderer crashed")
        await executor.wait(run_id, timeout=5)

        assert run.status == RunStatus.FAILED
        assert run.error_code == "capability_failure"

    @pytest.mark.asyncio
    async def test_signal_validation(self, make_executor):
        executor = make_executor(definition(Task("a", constant(1))))

        run = await run_to_end(executor)
        with pytest.raises(InvalidInput):
            executor.deliver_signal(run.run_id, "a")

        run_id = await executor.start("echo", {"student_id": "alice"})
        with pytest.raises(InvalidInput):
            executor.deliver_signal(run_id, "missing")
        await executor.wait(run_id)


class TestCancel:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_stops_at_next_boundary(self, make_executor):
        entered = asyncio.Event()
        gate = asyncio.Event()
        calls = []

        async def blocking(ctx):
            entered.set()
            await gate.wait()
            return "finished"

        async def after(ctx):
            calls.append("after")

        executor = make_executor(definition(Task("block", blocking), Task("after", after)))
        run_id = await executor.start("echo", {"student_id": "alice"})
        await entered.wait()

        assert executor.cancel(run_id) is True
        gate.set()
        run = await executor.wait(run_id, timeout=5)

        assert run.status == RunStatus.CANCELLED
        # The in-flight step completes; nothing after it starts
        assert run.step_states["block"] == StepStatus.SUCCEEDED
        assert run.step_states["after"] == StepStatus.PENDING
        assert calls == []
        assert executor.cancel(run_id) is False

    @pytest.mark.asyncio
    async def test_cancel_interrupts_wait(self, make_executor):
        executor = make_executor(definition(Wait("render", timeout=60)))
        run_id = await executor.start("echo", {"student_id": "alice"})
        run = executor.get_run(run_id)
        await until(lambda: run.step_states["render"] == StepStatus.RUNNING)

        executor.cancel(run_id)
        await executor.wait(run_id, timeout=1)

        assert run.status == RunStatus.CANCELLED
        terminal = executor._channels[run_id].events[-1]
        assert terminal.terminal and terminal.status == "cancelled"


class TestProgress:
    """Tests for progress subscription."""

    @pytest.mark.asyncio
    async def test_replay_yields_ordered_stream_ending_in_terminal(self, make_executor):
        executor = make_executor(definition(Task("a", constant(1)), Task("b", constant(2))))
        run = await run_to_end(executor)

        events = [e async for e in executor.subscribe(run.run_id, replay=True)]

        assert [e.seq for e in events] == list(range(len(events)))
        assert events[0].step_id is None and events[0].status == "running"
        assert [(e.step_id, e.status) for e in events[1:-1]] == [
            ("a", "running"),
            ("a", "succeeded"),
            ("b", "running"),
            ("b", "succeeded"),
        ]
        assert events[-1].terminal and events[-1].status == "succeeded"
        percents = [e.percent for e in events]
        assert percents == sorted(percents)
        assert percents[-1] == 100

    @pytest.mark.asyncio
    async def test_late_subscriber_gets_terminal_event(self, make_executor):
        executor = make_executor(definition(Task("a", constant(1))))
        run = await run_to_end(executor)

        events = [e async for e in executor.subscribe(run.run_id)]

        assert len(events) == 1
        assert events[0].terminal

    @pytest.mark.asyncio
    async def test_resume_from_cursor(self, make_executor):
        executor = make_executor(definition(Task("a", constant(1)), Task("b", constant(2))))
        run = await run_to_end(executor)

        events = [e async for e in executor.subscribe(run.run_id, cursor=3)]

        assert events[0].seq == 3
        assert events[-1].terminal

    @pytest.mark.asyncio
    async def test_live_subscribers_see_same_events(self, make_executor):
        gate = asyncio.Event()

        async def blocking(ctx):
            await gate.wait()

        executor = make_executor(definition(Task("a", blocking), Task("b", constant(2))))
        run_id = await executor.start("echo", {"student_id": "alice"})

        async def collect():
            return [e.seq async for e in executor.subscribe(run_id, replay=True)]

        first = asyncio.create_task(collect())
        second = asyncio.create_task(collect())
        await asyncio.sleep(0)
        gate.set()

        assert await first == await second
        assert executor.get_run(run_id).status == RunStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_failure_terminal_event_carries_code(self, make_executor):
        executor = make_executor(definition(Task("a", failing(InvalidInput("bad")))))
        run = await run_to_end(executor)

        events = [e async for e in executor.subscribe(run.run_id)]

        assert events[-1].status == "failed"
        assert events[-1].message == "invalid_input"


class TestRetention:
    """Tests for forgetting finished runs."""

    @pytest.mark.asyncio
    async def test_oldest_finished_runs_forgotten_beyond_limit(self, make_executor):
        executor = make_executor(definition(Task("a", constant(1))), finished_run_limit=2)

        runs = [await run_to_end(executor) for _ in range(3)]

        with pytest.raises(RunNotFound):
            executor.get_run(runs[0].run_id)
        assert [r.run_id for r in executor.runs()] == [runs[1].run_id, runs[2].run_id]
        assert set(executor._channels) == {runs[1].run_id, runs[2].run_id}
        assert set(executor._tasks) == {runs[1].run_id, runs[2].run_id}

    @pytest.mark.asyncio
    async def test_finished_run_expires_after_ttl(self, make_executor, clock):
        executor = make_executor(
            definition(Task("a", constant(1))), clock=clock, finished_run_ttl_seconds=60
        )
        first = await run_to_end(executor)

        clock.advance(59)
        events = [e async for e in executor.subscribe(first.run_id)]
        assert [e.status for e in events] == ["succeeded"]

        clock.advance(2)
        second = await executor.start("echo", {"student_id": "alice"})

        with pytest.raises(RunNotFound):
            executor.get_run(first.run_id)
        assert executor.get_run(second) is not None

    @pytest.mark.asyncio
    async def test_running_runs_never_forgotten(self, make_executor):
        gate = asyncio.Event()

        async def blocking(ctx):
            if ctx.input.text == "hold":
                await gate.wait()

        executor = make_executor(definition(Task("a", blocking)), finished_run_limit=1)
        held = await executor.start("echo", {"student_id": "alice", "text": "hold"})
        for _ in range(3):
            await run_to_end(executor)

        assert executor.get_run(held).status == RunStatus.RUNNING
        gate.set()
        assert (await executor.wait(held, timeout=5)).status == RunStatus.SUCCEEDED
