"""
Spaced-Repetition Scheduler.

Implements:
- A fixed review ladder (1, 3, 7, 14, 30 days)
- Weak-topic selection by proficiency threshold
- Due-topic selection from stored review dates
- Daily challenge-set construction with a weak-topic floor
"""

from __future__ import annotations

import math
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from datetime import date, datetime, timedelta
from itertools import cycle, islice

from studyloop.core.adaptation import difficulty_mix
from studyloop.core.models import ChallengeItem, ChallengeSet, ProficiencyRecord
from studyloop.errors import InvalidInput

# =============================================================================
# Review ladder
# =============================================================================

REVIEW_LADDER = (1, 3, 7, 14, 30)

DEFAULT_WEAK_THRESHOLD = 0.5
DEFAULT_WEAK_SHARE = 0.3


def next_interval(previous_interval: int, was_correct: bool) -> int:
    """
    Next review interval in days.

    A correct recall advances one rung of the ladder (capped at 30); a miss
    resets to 1 regardless of where the topic was. An interval that is not on
    the ladder (0 for a never-reviewed topic) advances to the next rung above it.
    """
    if not was_correct:
        return REVIEW_LADDER[0]
    for rung in REVIEW_LADDER:
        if rung > previous_interval:
            return rung
    return REVIEW_LADDER[-1]


def next_review_at(reviewed_at: datetime, interval_days: int) -> datetime:
    """Date-time a topic becomes due again."""
    return reviewed_at + timedelta(days=interval_days)


def review_dates(start: date, until: date) -> list[date]:
    """Review dates climbing the ladder from ``start``, stopping before ``until``."""
    dates = []
    current = start
    interval = 0
    while True:
        interval = next_interval(interval, True)
        current = current + timedelta(days=interval)
        if current >= until:
            return dates
        dates.append(current)


# =============================================================================
# Topic selection
# =============================================================================


def select_weak_topics(
    scores: Mapping[str, float],
    threshold: float = DEFAULT_WEAK_THRESHOLD,
) -> list[str]:
    """Topics scoring below ``threshold``, weakest first (ties by topic id)."""
    weak = [(score, topic_id) for topic_id, score in scores.items() if score < threshold]
    return [topic_id for _, topic_id in sorted(weak)]


def due_topics(records: Iterable[ProficiencyRecord], now: datetime) -> list[str]:
    """Topics whose review date has passed, most overdue first."""
    due = [
        (record.next_review_at, record.topic_id)
        for record in records
        if record.next_review_at is not None and record.next_review_at <= now
    ]
    return [topic_id for _, topic_id in sorted(due)]


def build_challenge_set(
    student_id: str,
    day: date,
    scores: Mapping[str, float],
    count: int,
    due: Sequence[str] = (),
    threshold: float = DEFAULT_WEAK_THRESHOLD,
    weak_share: float = DEFAULT_WEAK_SHARE,
) -> ChallengeSet:
    """
    Build a day's challenge set.

    When any topic is below ``threshold``, at least ``weak_share`` of the
    items cover weak topics. Remaining slots go to due topics first, then to
    every topic in ascending score order. Difficulties per topic follow
    ``difficulty_mix`` for that topic's score.
    """
    if count <= 0:
        raise InvalidInput("challenge set needs at least one item", ["count"])
    if not scores:
        raise InvalidInput("no topics available for a challenge set", ["topics"])

    weak = select_weak_topics(scores, threshold)
    # round() drops float noise such as 0.3 * 10 == 3.0000000000000004
    weak_slots = min(count, math.ceil(round(weak_share * count, 9))) if weak else 0

    ranked = [topic_id for _, topic_id in sorted((s, t) for t, s in scores.items())]
    fill_order = [t for t in due if t in scores]
    fill_order += [t for t in ranked if t not in fill_order]

    slots = list(islice(cycle(weak), weak_slots)) if weak_slots else []
    slots += list(islice(cycle(fill_order), count - weak_slots))

    per_topic = Counter(slots)
    difficulties = {
        topic_id: iter(difficulty_mix(scores[topic_id], n)) for topic_id, n in per_topic.items()
    }
    items = [
        ChallengeItem(topic_id=topic_id, difficulty=next(difficulties[topic_id]).value)
        for topic_id in slots
    ]
    return ChallengeSet(student_id=student_id, day=day, items=items)
