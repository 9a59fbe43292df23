"""The closed set of workflows the router can select."""

from __future__ import annotations

from enum import Enum

from studyloop.engine.steps import WorkflowDefinition
from studyloop.workflows import (
    ask_question,
    daily_challenge,
    past_papers,
    research,
    scan_question,
    study_plan,
    visualize,
)


class WorkflowType(str, Enum):
    ASK_QUESTION = "ask_question"
    SCAN_QUESTION = "scan_question"
    DAILY_CHALLENGE = "daily_challenge"
    STUDY_PLAN = "study_plan"
    RESEARCH = "research"
    VISUALIZE = "visualize"
    PAST_PAPERS = "past_papers"

    def __str__(self) -> str:
        return self.value


_MODULES = {
    WorkflowType.ASK_QUESTION: ask_question,
    WorkflowType.SCAN_QUESTION: scan_question,
    WorkflowType.DAILY_CHALLENGE: daily_challenge,
    WorkflowType.STUDY_PLAN: study_plan,
    WorkflowType.RESEARCH: research,
    WorkflowType.VISUALIZE: visualize,
    WorkflowType.PAST_PAPERS: past_papers,
}


def build_definitions() -> dict[str, WorkflowDefinition]:
    """workflow type -> definition, for every WorkflowType."""
    return {wf_type.value: module.DEFINITION for wf_type, module in _MODULES.items()}
