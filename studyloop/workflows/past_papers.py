"""
Past-paper weighting.

Each question is classified to a topic. A topic's weight is its share of the
questions; its priority is ``weight * (1 - proficiency)``, so frequent topics
the student is weak in come first.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from typing import Any

from studyloop.engine.steps import StepContext, Task, WorkflowDefinition
from studyloop.workflows.inputs import PastPapersInput


async def classify_questions(ctx: StepContext) -> list[str]:
    return list(
        await asyncio.gather(
            *(ctx.capabilities.classify_topic(question) for question in ctx.input.questions)
        )
    )


async def weight_topics(ctx: StepContext) -> list[dict[str, Any]]:
    counts = Counter(ctx.output("classify_questions"))
    total = sum(counts.values())
    ranked = []
    for topic_id, n in counts.items():
        weight = n / total
        score = await ctx.store.get(ctx.student_id, topic_id)
        ranked.append(
            {
                "topic_id": topic_id,
                "questions": n,
                "weight": weight,
                "score": score,
                "priority": weight * (1 - score),
            }
        )
    ranked.sort(key=lambda t: (-t["priority"], t["topic_id"]))
    return ranked


async def compose(ctx: StepContext) -> dict[str, Any]:
    return {
        "question_count": len(ctx.input.questions),
        "topics": ctx.output("weight_topics"),
    }


DEFINITION = WorkflowDefinition(
    type="past_papers",
    input_model=PastPapersInput,
    steps=[
        Task("classify_questions", classify_questions, message="classifying questions"),
        Task("weight_topics", weight_topics),
        Task("compose", compose),
    ],
    output_step="compose",
    description="Rank topics by exam frequency and weakness",
)
