"""Answer a typed question at the student's level and update their proficiency."""

from __future__ import annotations

from studyloop.engine.steps import WorkflowDefinition
from studyloop.workflows.common import question_steps
from studyloop.workflows.inputs import AskQuestionInput

DEFINITION = WorkflowDefinition(
    type="ask_question",
    input_model=AskQuestionInput,
    steps=question_steps(lambda ctx: ctx.input.question),
    output_step="compose",
    description="Explain a question at the student's tier and diagnose their understanding",
)
