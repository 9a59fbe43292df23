"""Search for sources on a query and summarize them at the student's level."""

from __future__ import annotations

from typing import Any

from studyloop.engine.steps import FailurePolicy, StepContext, Task, WorkflowDefinition
from studyloop.workflows.common import proficiency_view, tier_of
from studyloop.workflows.inputs import ResearchInput
from studyloop.workflows.prompts import GENERIC_SUMMARY, SUMMARY_PROMPT, get_prompt


async def search(ctx: StepContext) -> list[dict[str, Any]]:
    hits = await ctx.capabilities.search_index(ctx.input.query, ctx.input.filters)
    return [hit.model_dump() for hit in hits]


async def summarize(ctx: StepContext) -> str:
    sources = ctx.output("search")
    if not sources:
        return "No sources matched this query."
    view = await proficiency_view(ctx, ctx.input.topic_id) if ctx.input.topic_id else None
    listing = "\n".join(
        f"{i}. {s['title']}: {s['snippet']}" for i, s in enumerate(sources, start=1)
    )
    prompt = get_prompt(SUMMARY_PROMPT, tier_of(view), query=ctx.input.query, sources=listing)
    return await ctx.capabilities.generate_text(prompt, ctx.settings.explanation_max_tokens)


async def compose(ctx: StepContext) -> dict[str, Any]:
    return {
        "query": ctx.input.query,
        "summary": ctx.output("summarize"),
        "sources": ctx.output("search"),
    }


DEFINITION = WorkflowDefinition(
    type="research",
    input_model=ResearchInput,
    steps=[
        Task("search", search, message="searching"),
        Task(
            "summarize",
            summarize,
            on_failure=FailurePolicy.CONTINUE,
            fallback=GENERIC_SUMMARY,
            message="summarizing",
        ),
        Task("compose", compose),
    ],
    output_step="compose",
    description="Literature search with a tiered summary",
)
