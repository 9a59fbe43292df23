"""
Proficiency Store Tables.

SQLAlchemy models for durable learner state:
- Per-student, per-topic proficiency with bounded outcome history
- Daily challenge sets
- Bookmarks
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import JSON, Boolean, Date, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class ProficiencyRow(Base):
    """
    Mastery state per student per topic.

    Score is on a 0-1 scale. ``last_outcomes`` holds at most the configured
    history limit, oldest first.
    """

    __tablename__ = "proficiency_records"

    student_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    topic_id: Mapped[str] = mapped_column(String(256), primary_key=True)

    score: Mapped[float] = mapped_column(Float, nullable=False)
    sample_count: Mapped[int] = mapped_column(Integer, default=0)
    last_outcomes: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)

    # Scheduling
    interval_days: Mapped[int] = mapped_column(Integer, default=0)
    next_review_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Timestamps
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_accessed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_proficiency_next_review", "student_id", "next_review_at"),
        Index("idx_proficiency_last_access", "last_accessed_at"),
    )

    def __repr__(self) -> str:
        return f"<ProficiencyRow student={self.student_id} topic={self.topic_id} score={self.score}>"


class ChallengeSetRow(Base):
    """One challenge set per student per day."""

    __tablename__ = "challenge_sets"

    student_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    day: Mapped[date] = mapped_column(Date, primary_key=True)
    items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    completed: Mapped[bool] = mapped_column(Boolean, default=False)


class BookmarkRow(Base):
    """A saved explanation, resource or render."""

    __tablename__ = "bookmarks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    student_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    reference: Mapped[str] = mapped_column(Text, nullable=False)
    note: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
