"""
Input models for every workflow.

Validation happens before a run is created; a failing model surfaces as
InvalidInput naming the offending fields.
"""

from __future__ import annotations

from datetime import date
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from studyloop.core.models import utcnow


class WorkflowInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    student_id: str = Field(min_length=1)


class AskQuestionInput(WorkflowInput):
    question: str = Field(min_length=1)
    topic_id: str | None = None


class ScanQuestionInput(WorkflowInput):
    # Image or document reference understood by the extraction capability
    document: str = Field(min_length=1)
    topic_id: str | None = None


class DailyChallengeInput(WorkflowInput):
    day: date | None = None
    topics: list[str] = Field(default_factory=list)
    count: int | None = Field(default=None, ge=1, le=50)


class StudyPlanInput(WorkflowInput):
    exam_date: date
    topics: dict[str, float] = Field(min_length=1)
    hours_per_day: float = Field(default=2.0, gt=0, le=24)

    @field_validator("exam_date")
    @classmethod
    def exam_in_future(cls, value: date) -> date:
        if value <= utcnow().date():
            raise ValueError("exam date must be in the future")
        return value

    @field_validator("topics")
    @classmethod
    def weights_non_negative(cls, value: dict[str, float]) -> dict[str, float]:
        negative = [topic for topic, weight in value.items() if weight < 0]
        if negative:
            raise ValueError(f"topic weights must be non-negative: {negative}")
        return value


class ResearchInput(WorkflowInput):
    query: str = Field(min_length=1)
    filters: dict[str, Any] = Field(default_factory=dict)
    topic_id: str | None = None


class VisualizeInput(WorkflowInput):
    concept: str = Field(min_length=1)
    topic_id: str | None = None


class PastPapersInput(WorkflowInput):
    questions: list[str] = Field(min_length=1)

    @field_validator("questions")
    @classmethod
    def no_blank_questions(cls, value: list[str]) -> list[str]:
        if any(not q.strip() for q in value):
            raise ValueError("past-paper questions must not be blank")
        return [q.strip() for q in value]
