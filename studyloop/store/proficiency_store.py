"""
Proficiency Store.

Key-partitioned mastery state with per-key serialization:
- Reads of unseen topics return the neutral default (0.5)
- ``update`` is the only mutation path: read-modify-write under the key's
  lock, clamp to [0, 1], append bounded evidence, reschedule review
- Writes are confirmed by reading the record back before acknowledging

Concurrent updates to different keys never wait on each other; updates to
the same key queue behind one another.
"""

from __future__ import annotations

import asyncio
import math
from collections import Counter
from collections.abc import AsyncIterator, Hashable, Mapping
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta

from loguru import logger

from studyloop.config import Settings, get_settings
from studyloop.core.models import (
    Bookmark,
    ChallengeSet,
    Evidence,
    Outcome,
    ProficiencyRecord,
    utcnow,
)
from studyloop.core.spaced_repetition import (
    REVIEW_LADDER,
    due_topics,
    next_interval,
    next_review_at,
    select_weak_topics,
)
from studyloop.errors import DataInconsistency, InvalidInput
from studyloop.store.repository import InMemoryRepository, ProficiencyRepository

SCORE_TOLERANCE = 1e-9


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: Counter[Hashable] = Counter()

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


def clamp_score(value: float) -> float:
    return max(0.0, min(1.0, value))


class ProficiencyStore:
    """Durable per-student, per-topic mastery state."""

    def __init__(
        self,
        repository: ProficiencyRepository | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.repository = repository or InMemoryRepository()
        self._locks = KeyedLocks()

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, student_id: str, topic_id: str) -> float:
        """Current score, or the neutral default for a topic never seen."""
        async with self._locks.hold((student_id, topic_id)):
            record = await self.repository.load(student_id, topic_id)
            if record is None:
                return self.settings.default_proficiency
            await self.repository.touch(student_id, topic_id, utcnow())
            return record.score

    async def history(self, student_id: str, topic_id: str) -> list[Outcome]:
        """Recorded outcomes, newest last."""
        record = await self.repository.load(student_id, topic_id)
        return list(record.last_outcomes) if record else []

    async def records(self, student_id: str) -> list[ProficiencyRecord]:
        return await self.repository.list_for_student(student_id)

    async def snapshot(self, student_id: str) -> dict[str, float]:
        """topic_id -> score for every topic the student has a record for."""
        return {r.topic_id: r.score for r in await self.records(student_id)}

    async def weak_topics(self, student_id: str, threshold: float | None = None) -> list[str]:
        """Topics below ``threshold``, weakest first."""
        limit = self.settings.weak_topic_threshold if threshold is None else threshold
        return select_weak_topics(await self.snapshot(student_id), limit)

    async def due_topics(self, student_id: str, now: datetime | None = None) -> list[str]:
        return due_topics(await self.records(student_id), now or utcnow())

    # =========================================================================
    # Update protocol
    # =========================================================================

    async def update(
        self,
        student_id: str,
        topic_id: str,
        *,
        delta: float | None = None,
        absolute: float | None = None,
        evidence: Evidence | None = None,
    ) -> float:
        """
        Apply one mastery change and return the confirmed new score.

        Exactly one of ``delta`` or ``absolute`` must be given. The result is
        clamped to [0, 1]. Evidence is appended to the bounded history and the
        next review date is recomputed from the evidence time.

        Raises:
            InvalidInput: Neither or both of delta/absolute, or a non-finite value
            DataInconsistency: The persisted score does not match the write
        """
        if not student_id or not topic_id:
            raise InvalidInput("student_id and topic_id are required", ["student_id", "topic_id"])
        if (delta is None) == (absolute is None):
            raise InvalidInput("exactly one of delta or absolute is required", ["delta", "absolute"])
        value = delta if delta is not None else absolute
        if not math.isfinite(value):
            raise InvalidInput(f"score change must be finite, got {value!r}", ["delta", "absolute"])

        evidence = evidence or Evidence()

        async with self._locks.hold((student_id, topic_id)):
            current = await self.repository.load(student_id, topic_id)
            previous = current.score if current else self.settings.default_proficiency
            new_score = clamp_score(previous + delta if delta is not None else absolute)

            correct = evidence.correct
            if correct is None and not math.isclose(new_score, previous, abs_tol=SCORE_TOLERANCE):
                correct = new_score > previous

            prior_interval = current.interval_days if current else 0
            if correct is None:
                # No recall judgement: keep the rung, reschedule from this evidence
                interval = max(prior_interval, REVIEW_LADDER[0])
            else:
                interval = next_interval(prior_interval, correct)

            outcomes = list(current.last_outcomes) if current else []
            outcomes.append(Outcome(correct=correct, at=evidence.at, rationale=evidence.rationale))
            outcomes = outcomes[-self.settings.history_limit:]

            record = ProficiencyRecord(
                student_id=student_id,
                topic_id=topic_id,
                score=new_score,
                updated_at=evidence.at,
                sample_count=(current.sample_count if current else 0) + 1,
                last_outcomes=outcomes,
                next_review_at=next_review_at(evidence.at, interval),
                interval_days=interval,
                last_accessed_at=evidence.at,
            )
            await self.repository.save(record)

            confirmed = await self.repository.load(student_id, topic_id)
            if confirmed is None or not math.isclose(
                confirmed.score, new_score, abs_tol=SCORE_TOLERANCE
            ):
                logger.error(
                    "Proficiency write for {}/{} not confirmed: wrote {}, read back {}",
                    student_id,
                    topic_id,
                    new_score,
                    confirmed.score if confirmed else None,
                )
                raise DataInconsistency(f"proficiency write for {student_id}/{topic_id} not confirmed")

        logger.debug(
            "Proficiency {}/{}: {:.3f} -> {:.3f} (next review in {}d)",
            student_id,
            topic_id,
            previous,
            confirmed.score,
            interval,
        )
        return confirmed.score

    # =========================================================================
    # Challenge sets
    # =========================================================================

    async def challenge_set(self, student_id: str, day: date) -> ChallengeSet | None:
        return await self.repository.load_challenge_set(student_id, day)

    async def save_challenge_set(self, challenge_set: ChallengeSet) -> ChallengeSet:
        """Store a new challenge set; an existing set for the same day wins."""
        async with self._locks.hold(("challenge", challenge_set.student_id, challenge_set.day)):
            existing = await self.repository.load_challenge_set(
                challenge_set.student_id, challenge_set.day
            )
            if existing is not None:
                return existing
            await self.repository.save_challenge_set(challenge_set)
            return challenge_set

    async def complete_challenge(
        self,
        student_id: str,
        day: date,
        answers: Mapping[int, bool],
    ) -> dict[str, float]:
        """
        Apply a finished challenge set to the student's proficiency.

        Args:
            answers: item index -> answered correctly. Unanswered items are skipped.

        Returns:
            topic_id -> confirmed score after all updates
        """
        async with self._locks.hold(("challenge", student_id, day)):
            challenge_set = await self.repository.load_challenge_set(student_id, day)
            if challenge_set is None:
                raise InvalidInput(f"no challenge set for {student_id} on {day}", ["date"])
            if challenge_set.completed:
                raise InvalidInput(f"challenge set for {day} already completed", ["date"])
            if not answers:
                raise InvalidInput("no answers supplied", ["answers"])
            bad = [i for i in answers if not 0 <= i < len(challenge_set.items)]
            if bad:
                raise InvalidInput(f"answer indexes out of range: {bad}", ["answers"])

            at = utcnow()
            scores: dict[str, float] = {}
            for index in sorted(answers):
                item = challenge_set.items[index]
                correct = bool(answers[index])
                scores[item.topic_id] = await self.update(
                    student_id,
                    item.topic_id,
                    delta=(
                        self.settings.challenge_correct_delta
                        if correct
                        else self.settings.challenge_incorrect_delta
                    ),
                    evidence=Evidence(
                        rationale=f"daily challenge {day.isoformat()} item {index}",
                        correct=correct,
                        at=at,
                    ),
                )

            challenge_set.completed = True
            await self.repository.save_challenge_set(challenge_set)

        logger.info("Challenge set {} for {} completed ({} answers)", day, student_id, len(answers))
        return scores

    # =========================================================================
    # Bookmarks, retention and erasure
    # =========================================================================

    async def add_bookmark(self, bookmark: Bookmark) -> None:
        await self.repository.add_bookmark(bookmark)

    async def bookmarks(self, student_id: str) -> list[Bookmark]:
        return await self.repository.list_bookmarks(student_id)

    async def challenge_sets(self, student_id: str) -> list[ChallengeSet]:
        return await self.repository.list_challenge_sets(student_id)

    async def sweep(self, now: datetime | None = None) -> int:
        """Delete records with no access for the retention period."""
        cutoff = (now or utcnow()) - timedelta(days=self.settings.retention_days)
        removed = await self.repository.delete_stale(cutoff)
        logger.info("Retention sweep before {} removed {} records", cutoff.date(), removed)
        return removed

    async def erase(self, student_id: str) -> int:
        removed = await self.repository.erase_student(student_id)
        logger.info("Erased {} rows for student {}", removed, student_id)
        return removed
