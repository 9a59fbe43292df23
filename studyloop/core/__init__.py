"""
Core Module - Shared domain models and pure adaptation rules.

Components:
- models: Proficiency records, outcomes, challenge sets, bookmarks
- adaptation: Complexity tier, difficulty mix, time allocation
- spaced_repetition: Review ladder, weak/due topic selection, challenge sets

Design Principle:
Nothing in this package performs I/O. The store, gateway and workflow
engine import from here rather than reimplementing the rules.
"""

from studyloop.core.adaptation import (
    ComplexityTier,
    allocate_hours,
    complexity_tier,
    difficulty_mix,
    time_allocation,
    trend_adjusted_tier,
)
from studyloop.core.models import (
    Bookmark,
    ChallengeItem,
    ChallengeSet,
    Evidence,
    Outcome,
    ProficiencyRecord,
)
from studyloop.core.spaced_repetition import (
    REVIEW_LADDER,
    build_challenge_set,
    due_topics,
    next_interval,
    select_weak_topics,
)

__all__ = [
    # Models
    "Bookmark",
    "ChallengeItem",
    "ChallengeSet",
    "Evidence",
    "Outcome",
    "ProficiencyRecord",
    # Adaptation
    "ComplexityTier",
    "allocate_hours",
    "complexity_tier",
    "difficulty_mix",
    "time_allocation",
    "trend_adjusted_tier",
    # Spaced repetition
    "REVIEW_LADDER",
    "build_challenge_set",
    "due_topics",
    "next_interval",
    "select_weak_topics",
]
