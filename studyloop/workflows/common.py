"""Step actions shared by several workflows."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from studyloop.core.adaptation import ComplexityTier, trend_adjusted_tier
from studyloop.core.models import Evidence
from studyloop.engine.steps import (
    Branch,
    Choice,
    FailurePolicy,
    Parallel,
    Step,
    StepContext,
    Task,
)
from studyloop.workflows.prompts import (
    DIAGNOSE_PROMPT,
    EXPLAIN_PROMPT,
    GENERIC_EXPLANATIONS,
    get_prompt,
    parse_verdict,
)

FALLBACK_TOPIC = "general"


async def proficiency_view(ctx: StepContext, topic_id: str) -> dict[str, Any]:
    """Score, trend-adjusted tier and recent outcomes for one topic."""
    score = await ctx.store.get(ctx.student_id, topic_id)
    history = await ctx.store.history(ctx.student_id, topic_id)
    tier = trend_adjusted_tier(score, history)
    return {"topic_id": topic_id, "score": score, "tier": tier.value}


def tier_of(view: dict[str, Any] | None) -> ComplexityTier:
    if not view:
        return ComplexityTier.INTERMEDIATE
    return ComplexityTier(view["tier"])


def question_steps(question: Callable[[StepContext], str], prefix: str = "") -> list[Step]:
    """
    Classify, explain, diagnose and record for one question.

    ``prefix`` keeps step ids unique when the chain is nested in a larger
    workflow. The chain ends with a ``{prefix}compose`` step holding the answer.
    """

    def sid(name: str) -> str:
        return f"{prefix}{name}"

    async def classify(ctx: StepContext) -> str:
        topic_id = getattr(ctx.input, "topic_id", None)
        if topic_id:
            return topic_id
        return await ctx.capabilities.classify_topic(question(ctx))

    async def load(ctx: StepContext) -> dict[str, Any]:
        return await proficiency_view(ctx, ctx.output(sid("classify_topic")))

    async def explain(ctx: StepContext) -> str:
        view = ctx.output(sid("load_proficiency"))
        prompt = get_prompt(
            EXPLAIN_PROMPT,
            tier_of(view),
            topic_id=view["topic_id"],
            question=question(ctx),
        )
        return await ctx.capabilities.generate_text(prompt, ctx.settings.explanation_max_tokens)

    async def diagnose(ctx: StepContext) -> dict[str, Any]:
        view = ctx.output(sid("load_proficiency"))
        prompt = get_prompt(
            DIAGNOSE_PROMPT,
            topic_id=view["topic_id"],
            score=view["score"],
            question=question(ctx),
        )
        verdict = await ctx.capabilities.generate_text(prompt, 200, parse=parse_verdict)
        return verdict.model_dump()

    def generic_explanation(ctx: StepContext, error: BaseException) -> str:
        return GENERIC_EXPLANATIONS[tier_of(ctx.output(sid("load_proficiency")))]

    async def record(ctx: StepContext) -> float:
        view = ctx.output(sid("load_proficiency"))
        verdict = ctx.output(sid("diagnose"))
        return await ctx.store.update(
            ctx.student_id,
            view["topic_id"],
            absolute=verdict["estimate"],
            evidence=Evidence(rationale=verdict["rationale"], correct=verdict["correct"]),
        )

    async def compose(ctx: StepContext) -> dict[str, Any]:
        view = ctx.output(sid("load_proficiency"))
        recorded = ctx.output(sid("record_proficiency"))
        return {
            "topic_id": view["topic_id"],
            "tier": view["tier"],
            "explanation": ctx.output(sid("explain")),
            "diagnosis": ctx.output(sid("diagnose")),
            "proficiency": recorded if recorded is not None else view["score"],
        }

    return [
        Task(
            sid("classify_topic"),
            classify,
            on_failure=FailurePolicy.CONTINUE,
            fallback=FALLBACK_TOPIC,
            message="classifying topic",
        ),
        Task(sid("load_proficiency"), load),
        Parallel(
            sid("respond"),
            branches=[
                Branch(
                    "explain",
                    [
                        Task(
                            sid("explain"),
                            explain,
                            on_failure=FailurePolicy.CONTINUE,
                            fallback=generic_explanation,
                            message="explaining",
                        )
                    ],
                ),
                Branch(
                    "diagnose",
                    [Task(sid("diagnose"), diagnose, message="diagnosing")],
                    optional=True,
                ),
            ],
        ),
        Choice(
            sid("has_diagnosis"),
            lambda ctx: ctx.output(sid("diagnose")) is not None,
            if_true=[Task(sid("record_proficiency"), record, message="recording proficiency")],
        ),
        Task(sid("compose"), compose),
    ]
