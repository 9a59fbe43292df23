"""
Per-run progress channel.

Events are appended to an in-memory log; subscribers read the log from a
cursor, so any number of them can attach at any time and resume after a
disconnect. The log is closed after the terminal event.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from studyloop.engine.run import ProgressEvent


class ProgressChannel:
    def __init__(self, run_id: str):
        self.run_id = run_id
        self._events: list[ProgressEvent] = []
        self._changed = asyncio.Event()
        self.closed = False

    @property
    def head(self) -> int:
        """Cursor of the next event to be published."""
        return len(self._events)

    @property
    def events(self) -> list[ProgressEvent]:
        return list(self._events)

    def publish(
        self,
        step_id: str | None,
        status: str,
        percent: int,
        message: str = "",
        terminal: bool = False,
    ) -> ProgressEvent:
        if self.closed:
            raise RuntimeError(f"progress channel for run {self.run_id} is closed")
        event = ProgressEvent(
            run_id=self.run_id,
            seq=len(self._events),
            step_id=step_id,
            status=status,
            percent=percent,
            message=message,
            terminal=terminal,
        )
        self._events.append(event)
        if terminal:
            self.closed = True
        self._wake()
        return event

    def _wake(self) -> None:
        self._changed.set()
        self._changed = asyncio.Event()

    async def stream(self, cursor: int = 0) -> AsyncIterator[ProgressEvent]:
        """Yield events from ``cursor`` onward; ends after the terminal event."""
        position = max(0, cursor)
        while True:
            while position < len(self._events):
                event = self._events[position]
                position += 1
                yield event
            if self.closed:
                return
            await self._changed.wait()
