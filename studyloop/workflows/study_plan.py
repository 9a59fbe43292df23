"""Exam study plan: hours per topic weighted toward weak topics, plus review dates."""

from __future__ import annotations

from typing import Any

from studyloop.core.adaptation import allocate_hours
from studyloop.core.models import utcnow
from studyloop.core.spaced_repetition import review_dates
from studyloop.engine.steps import FailurePolicy, StepContext, Task, WorkflowDefinition
from studyloop.workflows.inputs import StudyPlanInput
from studyloop.workflows.prompts import PLAN_PROMPT, get_prompt


async def assess(ctx: StepContext) -> dict[str, float]:
    return {
        topic_id: await ctx.store.get(ctx.student_id, topic_id) for topic_id in ctx.input.topics
    }


async def allocate(ctx: StepContext) -> dict[str, Any]:
    today = utcnow().date()
    days = (ctx.input.exam_date - today).days
    total_hours = days * ctx.input.hours_per_day
    scores = ctx.output("assess")
    hours = allocate_hours(
        {t: (weight, scores[t]) for t, weight in ctx.input.topics.items()},
        total_hours,
    )
    return {
        "days_until_exam": days,
        "total_hours": total_hours,
        "hours": {t: round(h, 2) for t, h in sorted(hours.items(), key=lambda kv: -kv[1])},
        "review_dates": [d.isoformat() for d in review_dates(today, ctx.input.exam_date)],
    }


async def draft_narrative(ctx: StepContext) -> str:
    plan = ctx.output("allocate")
    allocation = "\n".join(f"- {t}: {h}h" for t, h in plan["hours"].items())
    prompt = get_prompt(
        PLAN_PROMPT,
        days=plan["days_until_exam"],
        allocation=allocation,
        review_dates=", ".join(plan["review_dates"]) or "none",
    )
    return await ctx.capabilities.generate_text(prompt, ctx.settings.explanation_max_tokens)


async def compose(ctx: StepContext) -> dict[str, Any]:
    return {
        "exam_date": ctx.input.exam_date.isoformat(),
        "proficiency": ctx.output("assess"),
        **ctx.output("allocate"),
        "narrative": ctx.output("draft_narrative"),
    }


DEFINITION = WorkflowDefinition(
    type="study_plan",
    input_model=StudyPlanInput,
    steps=[
        Task("assess", assess, message="assessing topics"),
        Task("allocate", allocate),
        Task(
            "draft_narrative",
            draft_narrative,
            on_failure=FailurePolicy.CONTINUE,
            fallback=None,
            message="drafting plan",
        ),
        Task("compose", compose),
    ],
    output_step="compose",
    description="Split study time until an exam across topics",
)
