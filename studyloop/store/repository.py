"""
Storage contract for proficiency records, challenge sets and bookmarks.

The proficiency store is the only caller. A write is considered confirmed
once the backend's ``save`` returns; the store reads the value back to
verify it.
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from datetime import date, datetime

from studyloop.core.models import Bookmark, ChallengeSet, ProficiencyRecord


class ProficiencyRepository(ABC):
    """Abstract persistence backend."""

    # ─── Proficiency records ─────────────────────────────────────────────────

    @abstractmethod
    async def load(self, student_id: str, topic_id: str) -> ProficiencyRecord | None:
        """Load one record, or None if the topic was never seen."""

    @abstractmethod
    async def save(self, record: ProficiencyRecord) -> None:
        """Durably write one record (insert or replace)."""

    @abstractmethod
    async def touch(self, student_id: str, topic_id: str, at: datetime) -> None:
        """Record an access for retention purposes."""

    @abstractmethod
    async def list_for_student(self, student_id: str) -> list[ProficiencyRecord]:
        """All records of a student, ordered by topic id."""

    @abstractmethod
    async def delete_stale(self, cutoff: datetime) -> int:
        """Delete records whose last access is older than ``cutoff``."""

    # ─── Challenge sets ──────────────────────────────────────────────────────

    @abstractmethod
    async def save_challenge_set(self, challenge_set: ChallengeSet) -> None:
        """Write a challenge set keyed by (student, day)."""

    @abstractmethod
    async def load_challenge_set(self, student_id: str, day: date) -> ChallengeSet | None:
        """Load the challenge set for a day."""

    @abstractmethod
    async def list_challenge_sets(self, student_id: str) -> list[ChallengeSet]:
        """All challenge sets of a student, oldest first."""

    # ─── Bookmarks ───────────────────────────────────────────────────────────

    @abstractmethod
    async def add_bookmark(self, bookmark: Bookmark) -> None:
        """Store a bookmark."""

    @abstractmethod
    async def list_bookmarks(self, student_id: str) -> list[Bookmark]:
        """All bookmarks of a student, oldest first."""

    # ─── Erasure ─────────────────────────────────────────────────────────────

    @abstractmethod
    async def erase_student(self, student_id: str) -> int:
        """Delete everything tied to a student. Returns rows removed."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryRepository(ProficiencyRepository):
    """
    Dictionary-backed repository.

    Stores deep copies so callers can never mutate persisted state by
    holding on to a returned object.
    """

    def __init__(self):
        self._records: dict[tuple[str, str], ProficiencyRecord] = {}
        self._challenges: dict[tuple[str, date], ChallengeSet] = {}
        self._bookmarks: list[Bookmark] = []

    async def load(self, student_id: str, topic_id: str) -> ProficiencyRecord | None:
        record = self._records.get((student_id, topic_id))
        return copy.deepcopy(record) if record else None

    async def save(self, record: ProficiencyRecord) -> None:
        self._records[record.key] = copy.deepcopy(record)

    async def touch(self, student_id: str, topic_id: str, at: datetime) -> None:
        record = self._records.get((student_id, topic_id))
        if record is not None:
            record.last_accessed_at = at

    async def list_for_student(self, student_id: str) -> list[ProficiencyRecord]:
        return [
            copy.deepcopy(record)
            for (sid, _), record in sorted(self._records.items())
            if sid == student_id
        ]

    async def delete_stale(self, cutoff: datetime) -> int:
        stale = [
            key
            for key, record in self._records.items()
            if (record.last_accessed_at or record.updated_at) < cutoff
        ]
        for key in stale:
            del self._records[key]
        return len(stale)

    async def save_challenge_set(self, challenge_set: ChallengeSet) -> None:
        key = (challenge_set.student_id, challenge_set.day)
        self._challenges[key] = copy.deepcopy(challenge_set)

    async def load_challenge_set(self, student_id: str, day: date) -> ChallengeSet | None:
        found = self._challenges.get((student_id, day))
        return copy.deepcopy(found) if found else None

    async def list_challenge_sets(self, student_id: str) -> list[ChallengeSet]:
        return [
            copy.deepcopy(cs)
            for (sid, _), cs in sorted(self._challenges.items())
            if sid == student_id
        ]

    async def add_bookmark(self, bookmark: Bookmark) -> None:
        self._bookmarks.append(copy.deepcopy(bookmark))

    async def list_bookmarks(self, student_id: str) -> list[Bookmark]:
        return [copy.deepcopy(b) for b in self._bookmarks if b.student_id == student_id]

    async def erase_student(self, student_id: str) -> int:
        records = [key for key in self._records if key[0] == student_id]
        challenges = [key for key in self._challenges if key[0] == student_id]
        for key in records:
            del self._records[key]
        for key in challenges:
            del self._challenges[key]
        kept = [b for b in self._bookmarks if b.student_id != student_id]
        removed = len(records) + len(challenges) + len(self._bookmarks) - len(kept)
        self._bookmarks = kept
        return removed
