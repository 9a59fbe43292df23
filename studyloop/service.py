"""
StudyLoop service facade.

The surface consumed by a UI or API layer: start, observe and cancel
workflow runs, read proficiency, and export or erase a student's data.
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from datetime import date, datetime
from typing import Any

from loguru import logger

from studyloop import __version__
from studyloop.config import Settings, get_settings
from studyloop.core.models import Bookmark, utcnow
from studyloop.engine.executor import WorkflowExecutor
from studyloop.engine.run import ProgressEvent, WorkflowRun
from studyloop.errors import InvalidInput
from studyloop.gateway.capabilities import Capabilities, HttpCapabilityClient
from studyloop.gateway.gateway import CapabilityGateway, CapabilityHandler
from studyloop.router import RequestRouter
from studyloop.store import ProficiencyRepository, ProficiencyStore, build_repository
from studyloop.workflows import build_definitions

EXPORT_SCHEMA = "studyloop.student-export"
EXPORT_VERSION = 1


class StudyLoop:
    """Orchestration engine wired together."""

    def __init__(
        self,
        store: ProficiencyStore,
        gateway: CapabilityGateway,
        executor: WorkflowExecutor,
        http_client: HttpCapabilityClient | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.executor = executor
        self.router = RequestRouter(executor)
        self._http_client = http_client

    async def __aenter__(self) -> StudyLoop:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.executor.shutdown()
        if self._http_client is not None:
            await self._http_client.close()
        await self.store.repository.close()

    # =========================================================================
    # Workflow runs
    # =========================================================================

    async def start_workflow(
        self,
        workflow_type: str | None,
        payload: Mapping[str, Any],
    ) -> str:
        """Start a run; with no type the router picks one from the payload."""
        if workflow_type is None:
            return await self.router.dispatch(payload)
        return await self.executor.start(str(workflow_type), payload)

    def subscribe_progress(
        self,
        run_id: str,
        replay: bool = False,
        cursor: int | None = None,
    ) -> AsyncIterator[ProgressEvent]:
        return self.executor.subscribe(run_id, replay=replay, cursor=cursor)

    def cancel_workflow(self, run_id: str) -> bool:
        return self.executor.cancel(run_id)

    def get_run(self, run_id: str) -> WorkflowRun:
        return self.executor.get_run(run_id)

    async def wait(self, run_id: str, timeout: float | None = None) -> WorkflowRun:
        return await self.executor.wait(run_id, timeout)

    def deliver_signal(
        self,
        run_id: str,
        step_id: str,
        payload: Any = None,
        error: str | None = None,
    ) -> bool:
        return self.executor.deliver_signal(run_id, step_id, payload, error)

    def gateway_status(self) -> dict[str, str]:
        return self.gateway.status()

    # =========================================================================
    # Student data
    # =========================================================================

    async def get_proficiency(self, student_id: str) -> dict[str, float]:
        if not student_id:
            raise InvalidInput("student_id is required", ["student_id"])
        return await self.store.snapshot(student_id)

    async def complete_challenge(
        self,
        student_id: str,
        day: date,
        answers: Mapping[int, bool],
    ) -> dict[str, float]:
        return await self.store.complete_challenge(student_id, day, answers)

    async def add_bookmark(
        self,
        student_id: str,
        kind: str,
        reference: str,
        note: str = "",
    ) -> Bookmark:
        if not student_id or not kind or not reference:
            raise InvalidInput(
                "student_id, kind and reference are required", ["student_id", "kind", "reference"]
            )
        bookmark = Bookmark(student_id=student_id, kind=kind, reference=reference, note=note)
        await self.store.add_bookmark(bookmark)
        return bookmark

    async def export_student_data(self, student_id: str) -> dict[str, Any]:
        """Every record, challenge set and bookmark tied to a student."""
        if not student_id:
            raise InvalidInput("student_id is required", ["student_id"])
        records = await self.store.records(student_id)
        challenge_sets = await self.store.challenge_sets(student_id)
        bookmarks = await self.store.bookmarks(student_id)
        logger.info(
            "Exported {} records, {} challenge sets, {} bookmarks for {}",
            len(records),
            len(challenge_sets),
            len(bookmarks),
            student_id,
        )
        return {
            "schema": EXPORT_SCHEMA,
            "version": EXPORT_VERSION,
            "generator": f"studyloop {__version__}",
            "student_id": student_id,
            "exported_at": utcnow().isoformat(),
            "proficiency": [r.to_dict() for r in records],
            "challenge_sets": [c.to_dict() for c in challenge_sets],
            "bookmarks": [b.to_dict() for b in bookmarks],
        }

    async def erase_student_data(self, student_id: str) -> int:
        if not student_id:
            raise InvalidInput("student_id is required", ["student_id"])
        return await self.store.erase(student_id)

    async def sweep_retention(self, now: datetime | None = None) -> int:
        return await self.store.sweep(now)


def build_studyloop(
    settings: Settings | None = None,
    handlers: Mapping[str, CapabilityHandler] | None = None,
    repository: ProficiencyRepository | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: random.Random | None = None,
) -> StudyLoop:
    """
    Wire store, gateway and executor from settings.

    Args:
        settings: Settings instance (defaults to get_settings())
        handlers: Capability handlers; HTTP handlers against
            ``settings.capability_base_url`` when omitted
        repository: Storage backend; chosen from ``settings.database_url``
            when omitted
        clock, sleep, rng: Time and randomness sources for retries and breakers
    """
    settings = settings or get_settings()
    http_client = None
    if handlers is None:
        http_client = HttpCapabilityClient(settings=settings)
        handlers = http_client.handlers()

    store = ProficiencyStore(repository or build_repository(settings.database_url), settings)
    gateway = CapabilityGateway(handlers, settings=settings, clock=clock, sleep=sleep, rng=rng)
    executor = WorkflowExecutor(
        build_definitions(),
        store,
        Capabilities(gateway),
        settings=settings,
        sleep=sleep,
        rng=rng,
        clock=clock,
    )
    return StudyLoop(store, gateway, executor, http_client=http_client)
