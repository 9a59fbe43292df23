"""
Daily challenge set.

One set per student per day: an existing set is returned unchanged. New sets
favour weak topics (at least the configured share of items when any exist),
then topics due for review.
"""

from __future__ import annotations

import asyncio
from typing import Any

from studyloop.core.adaptation import ComplexityTier
from studyloop.core.models import ChallengeSet, utcnow
from studyloop.core.spaced_repetition import build_challenge_set
from studyloop.engine.steps import Choice, FailurePolicy, StepContext, Task, WorkflowDefinition
from studyloop.errors import InvalidInput
from studyloop.store.proficiency_store import ProficiencyStore
from studyloop.workflows.inputs import DailyChallengeInput
from studyloop.workflows.prompts import CHALLENGE_ITEM_PROMPT, get_prompt


def challenge_day(ctx: StepContext):
    return ctx.input.day or utcnow().date()


async def require_topics(store: ProficiencyStore, data: DailyChallengeInput) -> None:
    """A student with no history must name topics unless today's set exists."""
    if data.topics or await store.snapshot(data.student_id):
        return
    if await store.challenge_set(data.student_id, data.day or utcnow().date()) is None:
        raise InvalidInput("student has no topics yet; pass topics to seed the set", ["topics"])


async def load_existing(ctx: StepContext) -> dict[str, Any] | None:
    existing = await ctx.store.challenge_set(ctx.student_id, challenge_day(ctx))
    return existing.to_dict() if existing else None


async def select_topics(ctx: StepContext) -> dict[str, Any]:
    scores = await ctx.store.snapshot(ctx.student_id)
    for topic_id in ctx.input.topics:
        if topic_id not in scores:
            scores[topic_id] = await ctx.store.get(ctx.student_id, topic_id)
    if not scores:
        raise InvalidInput("student has no topics yet; pass topics to seed the set", ["topics"])
    due = await ctx.store.due_topics(ctx.student_id)
    return {"scores": scores, "due": due}


async def plan_items(ctx: StepContext) -> dict[str, Any]:
    selection = ctx.output("select_topics")
    challenge_set = build_challenge_set(
        ctx.student_id,
        challenge_day(ctx),
        selection["scores"],
        ctx.input.count or ctx.settings.challenge_item_count,
        due=selection["due"],
        threshold=ctx.settings.weak_topic_threshold,
        weak_share=ctx.settings.weak_topic_share,
    )
    return challenge_set.to_dict()


async def generate_items(ctx: StepContext) -> dict[str, Any]:
    planned = ChallengeSet.from_dict(ctx.output("plan_items"))

    async def write(item):
        prompt = get_prompt(
            CHALLENGE_ITEM_PROMPT,
            ComplexityTier(item.difficulty),
            topic_id=item.topic_id,
        )
        return await ctx.capabilities.generate_text(prompt, 200)

    questions = await asyncio.gather(*(write(item) for item in planned.items))
    for item, question in zip(planned.items, questions):
        item.payload = {"question": question}
    return planned.to_dict()


async def persist(ctx: StepContext) -> dict[str, Any]:
    generated = ChallengeSet.from_dict(ctx.output("generate_items"))
    stored = await ctx.store.save_challenge_set(generated)
    return stored.to_dict()


async def compose(ctx: StepContext) -> dict[str, Any]:
    return ctx.output("persist") or ctx.output("load_existing")


DEFINITION = WorkflowDefinition(
    type="daily_challenge",
    input_model=DailyChallengeInput,
    steps=[
        Task("load_existing", load_existing),
        Choice(
            "exists",
            lambda ctx: ctx.output("load_existing") is not None,
            if_false=[
                Task("select_topics", select_topics, message="selecting topics"),
                Task("plan_items", plan_items),
                Task(
                    "generate_items",
                    generate_items,
                    on_failure=FailurePolicy.CONTINUE,
                    # Items without generated text still drive the review
                    fallback=lambda ctx, error: ctx.output("plan_items"),
                    message="writing questions",
                ),
                Task("persist", persist),
            ],
        ),
        Task("compose", compose),
    ],
    output_step="compose",
    description="Build or return today's challenge set",
    precheck=require_topics,
)
