"""
SQLAlchemy-backed repository.

Each operation runs as its own transaction on a worker thread so the event
loop driving workflow runs is never blocked on database I/O.
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from studyloop.core.models import (
    Bookmark,
    ChallengeItem,
    ChallengeSet,
    Outcome,
    ProficiencyRecord,
    as_utc,
)
from studyloop.store.database import init_db, make_engine, make_session_factory, session_scope
from studyloop.store.repository import ProficiencyRepository
from studyloop.store.tables import BookmarkRow, ChallengeSetRow, ProficiencyRow


def _row_to_record(row: ProficiencyRow) -> ProficiencyRecord:
    return ProficiencyRecord(
        student_id=row.student_id,
        topic_id=row.topic_id,
        score=row.score,
        updated_at=as_utc(row.updated_at),
        sample_count=row.sample_count or 0,
        last_outcomes=[Outcome.from_dict(o) for o in row.last_outcomes or []],
        next_review_at=as_utc(row.next_review_at),
        interval_days=row.interval_days or 0,
        last_accessed_at=as_utc(row.last_accessed_at),
    )


def _row_to_challenge_set(row: ChallengeSetRow) -> ChallengeSet:
    return ChallengeSet(
        student_id=row.student_id,
        day=row.day,
        items=[ChallengeItem.from_dict(i) for i in row.items or []],
        completed=bool(row.completed),
    )


class SqlRepository(ProficiencyRepository):
    """Repository over any SQLAlchemy-supported database (SQLite by default)."""

    def __init__(self, database_url: str, echo: bool = False):
        self.engine = make_engine(database_url, echo=echo)
        self._factory = make_session_factory(self.engine)
        init_db(self.engine)

    async def _run(self, fn, *args):
        return await asyncio.to_thread(self._transact, fn, *args)

    def _transact(self, fn, *args):
        with session_scope(self._factory) as session:
            return fn(session, *args)

    # ─── Proficiency records ─────────────────────────────────────────────────

    async def load(self, student_id: str, topic_id: str) -> ProficiencyRecord | None:
        def _load(session: Session) -> ProficiencyRecord | None:
            row = session.get(ProficiencyRow, (student_id, topic_id))
            return _row_to_record(row) if row else None

        return await self._run(_load)

    async def save(self, record: ProficiencyRecord) -> None:
        def _save(session: Session) -> None:
            row = session.get(ProficiencyRow, record.key)
            if row is None:
                row = ProficiencyRow(student_id=record.student_id, topic_id=record.topic_id)
                session.add(row)
            row.score = record.score
            row.sample_count = record.sample_count
            row.last_outcomes = [o.to_dict() for o in record.last_outcomes]
            row.interval_days = record.interval_days
            row.next_review_at = record.next_review_at
            row.updated_at = record.updated_at
            row.last_accessed_at = record.last_accessed_at

        await self._run(_save)

    async def touch(self, student_id: str, topic_id: str, at: datetime) -> None:
        def _touch(session: Session) -> None:
            row = session.get(ProficiencyRow, (student_id, topic_id))
            if row is not None:
                row.last_accessed_at = at

        await self._run(_touch)

    async def list_for_student(self, student_id: str) -> list[ProficiencyRecord]:
        def _list(session: Session) -> list[ProficiencyRecord]:
            rows = session.scalars(
                select(ProficiencyRow)
                .where(ProficiencyRow.student_id == student_id)
                .order_by(ProficiencyRow.topic_id)
            )
            return [_row_to_record(row) for row in rows]

        return await self._run(_list)

    async def delete_stale(self, cutoff: datetime) -> int:
        def _sweep(session: Session) -> int:
            stale = [
                row
                for row in session.scalars(select(ProficiencyRow))
                if as_utc(row.last_accessed_at or row.updated_at) < cutoff
            ]
            for row in stale:
                session.delete(row)
            return len(stale)

        return await self._run(_sweep)

    # ─── Challenge sets ──────────────────────────────────────────────────────

    async def save_challenge_set(self, challenge_set: ChallengeSet) -> None:
        def _save(session: Session) -> None:
            key = (challenge_set.student_id, challenge_set.day)
            row = session.get(ChallengeSetRow, key)
            if row is None:
                row = ChallengeSetRow(student_id=challenge_set.student_id, day=challenge_set.day)
                session.add(row)
            row.items = [item.to_dict() for item in challenge_set.items]
            row.completed = challenge_set.completed

        await self._run(_save)

    async def load_challenge_set(self, student_id: str, day: date) -> ChallengeSet | None:
        def _load(session: Session) -> ChallengeSet | None:
            row = session.get(ChallengeSetRow, (student_id, day))
            return _row_to_challenge_set(row) if row else None

        return await self._run(_load)

    async def list_challenge_sets(self, student_id: str) -> list[ChallengeSet]:
        def _list(session: Session) -> list[ChallengeSet]:
            rows = session.scalars(
                select(ChallengeSetRow)
                .where(ChallengeSetRow.student_id == student_id)
                .order_by(ChallengeSetRow.day)
            )
            return [_row_to_challenge_set(row) for row in rows]

        return await self._run(_list)

    # ─── Bookmarks ───────────────────────────────────────────────────────────

    async def add_bookmark(self, bookmark: Bookmark) -> None:
        def _add(session: Session) -> None:
            session.add(
                BookmarkRow(
                    student_id=bookmark.student_id,
                    kind=bookmark.kind,
                    reference=bookmark.reference,
                    note=bookmark.note,
                    created_at=bookmark.created_at,
                )
            )

        await self._run(_add)

    async def list_bookmarks(self, student_id: str) -> list[Bookmark]:
        def _list(session: Session) -> list[Bookmark]:
            rows = session.scalars(
                select(BookmarkRow)
                .where(BookmarkRow.student_id == student_id)
                .order_by(BookmarkRow.id)
            )
            return [
                Bookmark(
                    student_id=row.student_id,
                    kind=row.kind,
                    reference=row.reference,
                    note=row.note or "",
                    created_at=as_utc(row.created_at),
                )
                for row in rows
            ]

        return await self._run(_list)

    # ─── Erasure ─────────────────────────────────────────────────────────────

    async def erase_student(self, student_id: str) -> int:
        def _erase(session: Session) -> int:
            removed = 0
            for table in (ProficiencyRow, ChallengeSetRow, BookmarkRow):
                result = session.execute(delete(table).where(table.student_id == student_id))
                removed += result.rowcount or 0
            return removed

        return await self._run(_erase)

    async def close(self) -> None:
        await asyncio.to_thread(self.engine.dispose)
