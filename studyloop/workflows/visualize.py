"""
Animated explanation of a concept.

The render capability only accepts the job; completion arrives later as a
signal for the ``await_render`` step (``deliver_signal(run_id, "await_render", ...)``).
"""

from __future__ import annotations

from typing import Any

from studyloop.engine.steps import (
    Choice,
    FailurePolicy,
    StepContext,
    Task,
    Wait,
    WorkflowDefinition,
)
from studyloop.workflows.common import proficiency_view, tier_of
from studyloop.workflows.inputs import VisualizeInput
from studyloop.workflows.prompts import GENERIC_STORYBOARD, STORYBOARD_PROMPT, get_prompt

RENDER_STEP = "await_render"


async def load(ctx: StepContext) -> dict[str, Any]:
    return await proficiency_view(ctx, ctx.input.topic_id or ctx.input.concept)


async def storyboard(ctx: StepContext) -> str:
    prompt = get_prompt(
        STORYBOARD_PROMPT,
        tier_of(ctx.output("load_proficiency")),
        concept=ctx.input.concept,
    )
    return await ctx.capabilities.generate_text(prompt, ctx.settings.explanation_max_tokens)


async def submit_render(ctx: StepContext) -> str:
    return await ctx.capabilities.render_job(
        {
            "concept": ctx.input.concept,
            "tier": ctx.output("load_proficiency")["tier"],
            "storyboard": ctx.output("storyboard"),
        }
    )


async def compose(ctx: StepContext) -> dict[str, Any]:
    return {
        "concept": ctx.input.concept,
        "tier": ctx.output("load_proficiency")["tier"],
        "storyboard": ctx.output("storyboard"),
        "job_id": ctx.output("submit_render"),
        "render": ctx.output(RENDER_STEP),
    }


DEFINITION = WorkflowDefinition(
    type="visualize",
    input_model=VisualizeInput,
    steps=[
        Task("load_proficiency", load),
        Task(
            "storyboard",
            storyboard,
            on_failure=FailurePolicy.CONTINUE,
            fallback=GENERIC_STORYBOARD,
            message="writing storyboard",
        ),
        Task(
            "submit_render",
            submit_render,
            on_failure=FailurePolicy.CONTINUE,
            fallback=None,
            message="submitting render",
        ),
        Choice(
            "render_submitted",
            lambda ctx: ctx.output("submit_render") is not None,
            if_true=[
                Wait(
                    RENDER_STEP,
                    timeout=lambda ctx: ctx.settings.render_timeout_seconds,
                    on_failure=FailurePolicy.CONTINUE,
                    fallback=None,
                    message="rendering",
                )
            ],
        ),
        Task("compose", compose),
    ],
    output_step="compose",
    description="Storyboard and render an animation for a concept",
)
