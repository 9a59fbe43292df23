"""
Request Router.

Maps an incoming request onto one member of the closed workflow set. An
explicit ``type`` always wins; otherwise the request's fields decide.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from loguru import logger

from studyloop.engine.executor import WorkflowExecutor
from studyloop.errors import InvalidInput
from studyloop.workflows.registry import WorkflowType

# First matching field decides; order matters
_FIELD_RULES: tuple[tuple[str, WorkflowType], ...] = (
    ("document", WorkflowType.SCAN_QUESTION),
    ("exam_date", WorkflowType.STUDY_PLAN),
    ("questions", WorkflowType.PAST_PAPERS),
    ("query", WorkflowType.RESEARCH),
    ("concept", WorkflowType.VISUALIZE),
    ("question", WorkflowType.ASK_QUESTION),
)


class RequestRouter:
    def __init__(self, executor: WorkflowExecutor):
        self.executor = executor

    @staticmethod
    def classify(request: Mapping[str, Any]) -> WorkflowType:
        """Pick the workflow for a request."""
        explicit = request.get("type")
        if explicit:
            try:
                return WorkflowType(str(explicit))
            except ValueError:
                raise InvalidInput(f"unknown workflow type {explicit!r}", ["type"]) from None

        for field, workflow_type in _FIELD_RULES:
            if request.get(field):
                return workflow_type
        return WorkflowType.DAILY_CHALLENGE

    async def dispatch(self, request: Mapping[str, Any]) -> str:
        """Classify and start a run. Returns the run id."""
        workflow_type = self.classify(request)
        payload = {k: v for k, v in request.items() if k != "type"}
        run_id = await self.executor.start(workflow_type.value, payload)
        logger.debug("Routed request to {} as run {}", workflow_type.value, run_id)
        return run_id
