"""
Core domain models.

Design:
- Outcome: one piece of evidence recorded against a (student, topic)
- ProficiencyRecord: durable mastery state, owned by the proficiency store
- ChallengeSet / ChallengeItem: a day's generated review set
- Bookmark: a student's saved explanation or resource
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes coming back from storage."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_dt(value: str | None) -> datetime | None:
    return as_utc(datetime.fromisoformat(value)) if value else None


@dataclass(frozen=True)
class Outcome:
    """A single recorded outcome with its diagnostic rationale."""

    correct: bool | None
    at: datetime
    rationale: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"correct": self.correct, "at": self.at.isoformat(), "rationale": self.rationale}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Outcome:
        return cls(
            correct=data.get("correct"),
            at=_parse_dt(data["at"]),
            rationale=data.get("rationale", ""),
        )


@dataclass(frozen=True)
class Evidence:
    """
    Evidence supplied with a proficiency update.

    ``correct`` may be left as None for diagnostic evidence that carries no
    right/wrong judgement; the store then infers it from the score movement.
    """

    rationale: str = ""
    correct: bool | None = None
    at: datetime = field(default_factory=utcnow)


@dataclass
class ProficiencyRecord:
    """Mastery state for one (student, topic)."""

    student_id: str
    topic_id: str
    score: float
    updated_at: datetime
    sample_count: int = 0
    last_outcomes: list[Outcome] = field(default_factory=list)
    next_review_at: datetime | None = None
    interval_days: int = 0
    last_accessed_at: datetime | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.student_id, self.topic_id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-ready dictionary."""
        return {
            "student_id": self.student_id,
            "topic_id": self.topic_id,
            "score": self.score,
            "updated_at": self.updated_at.isoformat(),
            "sample_count": self.sample_count,
            "last_outcomes": [o.to_dict() for o in self.last_outcomes],
            "next_review_at": self.next_review_at.isoformat() if self.next_review_at else None,
            "interval_days": self.interval_days,
            "last_accessed_at": (
                self.last_accessed_at.isoformat() if self.last_accessed_at else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProficiencyRecord:
        return cls(
            student_id=data["student_id"],
            topic_id=data["topic_id"],
            score=float(data["score"]),
            updated_at=_parse_dt(data["updated_at"]),
            sample_count=int(data.get("sample_count", 0)),
            last_outcomes=[Outcome.from_dict(o) for o in data.get("last_outcomes", [])],
            next_review_at=_parse_dt(data.get("next_review_at")),
            interval_days=int(data.get("interval_days", 0)),
            last_accessed_at=_parse_dt(data.get("last_accessed_at")),
        )


@dataclass
class ChallengeItem:
    """One item in a daily challenge set."""

    topic_id: str
    difficulty: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"topic_id": self.topic_id, "difficulty": self.difficulty, "payload": self.payload}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChallengeItem:
        return cls(
            topic_id=data["topic_id"],
            difficulty=data["difficulty"],
            payload=dict(data.get("payload") or {}),
        )


@dataclass
class ChallengeSet:
    """A student's challenge set for one day."""

    student_id: str
    day: date
    items: list[ChallengeItem] = field(default_factory=list)
    completed: bool = False

    @property
    def topic_ids(self) -> list[str]:
        return [item.topic_id for item in self.items]

    def to_dict(self) -> dict[str, Any]:
        return {
            "student_id": self.student_id,
            "date": self.day.isoformat(),
            "items": [item.to_dict() for item in self.items],
            "completed": self.completed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChallengeSet:
        return cls(
            student_id=data["student_id"],
            day=date.fromisoformat(data["date"]),
            items=[ChallengeItem.from_dict(i) for i in data.get("items", [])],
            completed=bool(data.get("completed", False)),
        )


@dataclass
class Bookmark:
    """A saved explanation, resource or render tied to a student."""

    student_id: str
    kind: str
    reference: str
    note: str = ""
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "student_id": self.student_id,
            "kind": self.kind,
            "reference": self.reference,
            "note": self.note,
            "created_at": self.created_at.isoformat(),
        }
