"""
Answer a photographed or scanned question.

Extraction confidence below ``ocr_min_confidence`` ends the run with a
request to retype the question instead of explaining unreliable text.
"""

from __future__ import annotations

from typing import Any

from studyloop.engine.steps import Choice, StepContext, Task, WorkflowDefinition
from studyloop.workflows.common import question_steps
from studyloop.workflows.inputs import ScanQuestionInput

NEEDS_RETYPE = "needs_retype"


async def extract(ctx: StepContext) -> dict[str, Any]:
    extracted = await ctx.capabilities.extract_text(ctx.input.document)
    return {"text": extracted.text, "confidence": extracted.average_confidence}


def legible(ctx: StepContext) -> bool:
    extracted = ctx.output("extract_text")
    return bool(extracted["text"].strip()) and (
        extracted["confidence"] >= ctx.settings.ocr_min_confidence
    )


async def request_retype(ctx: StepContext) -> dict[str, Any]:
    confidence = ctx.output("extract_text")["confidence"]
    return {
        "status": NEEDS_RETYPE,
        "confidence": confidence,
        "message": "The scan could not be read reliably. Please type the question instead.",
    }


async def compose(ctx: StepContext) -> dict[str, Any]:
    answer = ctx.output("answer_compose")
    if answer is None:
        return ctx.output("request_retype")
    return {
        "status": "answered",
        "question": ctx.output("extract_text")["text"],
        **answer,
    }


DEFINITION = WorkflowDefinition(
    type="scan_question",
    input_model=ScanQuestionInput,
    steps=[
        Task("extract_text", extract, message="reading scan"),
        Choice(
            "legible",
            legible,
            if_true=question_steps(lambda ctx: ctx.output("extract_text")["text"], "answer_"),
            if_false=[Task("request_retype", request_retype)],
        ),
        Task("compose", compose),
    ],
    output_step="compose",
    description="Extract a question from a scan, then answer it like ask_question",
)
