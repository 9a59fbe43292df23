"""
Proficiency persistence.

- ProficiencyStore: the only mutation path for mastery state
- InMemoryRepository: process-local backend (tests, ephemeral runs)
- SqlRepository: SQLAlchemy backend (SQLite by default)
"""

from studyloop.store.proficiency_store import KeyedLocks, ProficiencyStore
from studyloop.store.repository import InMemoryRepository, ProficiencyRepository


def build_repository(database_url: str | None) -> ProficiencyRepository:
    """Pick the durable backend when a database URL is configured."""
    if not database_url:
        return InMemoryRepository()
    from studyloop.store.sql import SqlRepository

    return SqlRepository(database_url)


__all__ = [
    "InMemoryRepository",
    "KeyedLocks",
    "ProficiencyRepository",
    "ProficiencyStore",
    "build_repository",
]
