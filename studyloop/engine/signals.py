"""
Completion signals for Wait steps, correlated by (run_id, step_id).

A signal delivered before its Wait step starts waiting is held and handed
over as soon as the step registers.
"""

from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from studyloop.errors import CapabilityFailure

SignalKey = tuple[str, str]


class SignalHub:
    def __init__(self):
        self._waiting: dict[SignalKey, asyncio.Future] = {}
        self._early: dict[SignalKey, tuple[Any, str | None]] = {}

    def expect(self, run_id: str, step_id: str) -> asyncio.Future:
        """Register a Wait step and return the future its signal resolves."""
        key = (run_id, step_id)
        future = asyncio.get_running_loop().create_future()
        self._waiting[key] = future
        if key in self._early:
            self._resolve(future, step_id, *self._early.pop(key))
        return future

    def deliver(
        self,
        run_id: str,
        step_id: str,
        payload: Any = None,
        error: str | None = None,
    ) -> bool:
        """
        Hand a completion signal to its Wait step.

        Returns:
            True if a waiting step was resumed, False if the signal was held
            for a step that has not started waiting yet.
        """
        key = (run_id, step_id)
        future = self._waiting.get(key)
        if future is None or future.done():
            self._early[key] = (payload, error)
            logger.debug("Holding early signal for {}/{}", run_id, step_id)
            return False
        self._resolve(future, step_id, payload, error)
        return True

    def discard(self, run_id: str, step_id: str) -> None:
        self._waiting.pop((run_id, step_id), None)

    def interrupt(self, run_id: str, exc: BaseException) -> int:
        """Fail every pending wait of ``run_id`` with ``exc``."""
        interrupted = 0
        for (owner, _), future in list(self._waiting.items()):
            if owner == run_id and not future.done():
                future.set_exception(exc)
                interrupted += 1
        return interrupted

    def abandon(self, run_id: str) -> None:
        """Forget everything about a finished run."""
        for key in [k for k in self._waiting if k[0] == run_id]:
            future = self._waiting.pop(key)
            if not future.done():
                future.cancel()
        for key in [k for k in self._early if k[0] == run_id]:
            del self._early[key]

    @staticmethod
    def _resolve(future: asyncio.Future, step_id: str, payload: Any, error: str | None) -> None:
        if error:
            future.set_exception(CapabilityFailure(step_id, error))
        else:
            future.set_result(payload)
