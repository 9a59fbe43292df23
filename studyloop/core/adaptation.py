"""
Adaptation Rules.

Pure functions mapping proficiency to:
1. Complexity tier - how an explanation is pitched
2. Difficulty mix - how a set of practice items is spread across tiers
3. Time allocation - how study hours are split across topics

No I/O happens here; callers supply scores and outcome history.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from enum import Enum

from studyloop.core.models import Outcome
from studyloop.errors import InvalidInput

# Proficiency of 0 is treated as this value so allocation stays bounded
PROFICIENCY_EPSILON = 0.05

# Tier boundaries; both are inclusive toward Intermediate
BASIC_CEILING = 0.3
ADVANCED_FLOOR = 0.7

# Share of items one and two tiers above the current one
ONE_TIER_HARDER_SHARE = 0.3
TWO_TIERS_HARDER_SHARE = 0.1

# Consecutive outcomes needed before the tier moves with the trend
TREND_WINDOW = 3


class ComplexityTier(str, Enum):
    """Complexity tier an explanation or item is pitched at."""

    BASIC = "basic"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"

    @classmethod
    def from_score(cls, score: float) -> ComplexityTier:
        """
        Convert a 0-1 proficiency score to a tier.

        score < 0.3 is Basic, 0.3..0.7 inclusive is Intermediate,
        anything above 0.7 is Advanced.
        """
        _check_score(score)
        if score < BASIC_CEILING:
            return cls.BASIC
        elif score <= ADVANCED_FLOOR:
            return cls.INTERMEDIATE
        return cls.ADVANCED

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def shifted(self, steps: int) -> ComplexityTier:
        """Move up (or down) the tier ladder, capped at both ends."""
        index = max(0, min(len(_TIER_ORDER) - 1, self.rank + steps))
        return _TIER_ORDER[index]


_TIER_ORDER = (ComplexityTier.BASIC, ComplexityTier.INTERMEDIATE, ComplexityTier.ADVANCED)


def _check_score(score: float) -> None:
    if not isinstance(score, (int, float)) or math.isnan(score) or not 0.0 <= score <= 1.0:
        raise InvalidInput(f"score must be within [0.0, 1.0], got {score!r}", ["score"])


def complexity_tier(score: float) -> ComplexityTier:
    """Map a proficiency score to its complexity tier."""
    return ComplexityTier.from_score(score)


def trend_adjusted_tier(score: float, outcomes: Sequence[Outcome]) -> ComplexityTier:
    """
    Tier for ``score``, nudged by the most recent outcomes.

    Three straight correct outcomes escalate one tier; three straight
    misses drop one tier. ``outcomes`` is ordered newest last.
    """
    tier = complexity_tier(score)
    recent = list(outcomes)[-TREND_WINDOW:]
    if len(recent) < TREND_WINDOW:
        return tier
    if all(o.correct is True for o in recent):
        return tier.shifted(1)
    if all(o.correct is False for o in recent):
        return tier.shifted(-1)
    return tier


def difficulty_mix(score: float, count: int) -> list[ComplexityTier]:
    """
    Deterministic difficulty split for ``count`` items.

    60% at the current tier, 30% one tier harder, 10% two tiers harder.
    Harder tiers are capped at Advanced. The harder buckets are floored, so
    any rounding remainder lands in the current-tier bucket and the result
    always has exactly ``count`` entries.
    """
    if count < 0:
        raise InvalidInput(f"count must be non-negative, got {count}", ["count"])

    current = complexity_tier(score)
    one_harder = math.floor(count * ONE_TIER_HARDER_SHARE)
    two_harder = math.floor(count * TWO_TIERS_HARDER_SHARE)
    at_current = count - one_harder - two_harder

    return (
        [current] * at_current
        + [current.shifted(1)] * one_harder
        + [current.shifted(2)] * two_harder
    )


def time_allocation(topic_weight: float, proficiency: float, total_hours: float) -> float:
    """
    Raw (un-normalized) hours for a single topic.

    hours = total_hours * topic_weight / max(proficiency, epsilon)
    """
    if topic_weight < 0:
        raise InvalidInput("topic weight must be non-negative", ["topic_weight"])
    if total_hours < 0:
        raise InvalidInput("total hours must be non-negative", ["total_hours"])
    _check_score(proficiency)
    return total_hours * topic_weight / max(proficiency, PROFICIENCY_EPSILON)


def allocate_hours(
    topics: Mapping[str, tuple[float, float]],
    total_hours: float,
) -> dict[str, float]:
    """
    Split ``total_hours`` across topics.

    Args:
        topics: topic_id -> (weight, proficiency)
        total_hours: Hours available until the exam

    Returns:
        topic_id -> hours, re-normalized so the values sum to total_hours;
        when every weight is zero the hours are split evenly
    """
    raw = {
        topic_id: time_allocation(weight, proficiency, total_hours)
        for topic_id, (weight, proficiency) in topics.items()
    }
    raw_total = sum(raw.values())
    if raw_total <= 0:
        return {topic_id: total_hours / len(raw) for topic_id in raw}
    return {topic_id: total_hours * hours / raw_total for topic_id, hours in raw.items()}
