from __future__ import annotations

import asyncio
import logging
import os
from typing import AsyncIterator, Callable, Optional

from toolgen.models import RevealCursor

log = logging.getLogger(__name__)

try:
    REVEAL_TICK_MS = float(os.getenv("REVEAL_TICK_MS", "1"))
except Exception:
    REVEAL_TICK_MS = 1.0
if REVEAL_TICK_MS < 0:
    REVEAL_TICK_MS = 0.0


class ProgressiveRevealer:
    """
    Turns a finished text into a timed sequence of growing prefixes.

    Only one cursor is live at a time: ``reveal``/``start`` replace it and
    ``cancel`` drops it. An iterator whose cursor is no longer live stops at
    its next tick without emitting anything else.
    """

    def __init__(self, tick_ms: Optional[float] = None, step: int = 1):
        self.tick_ms = REVEAL_TICK_MS if tick_ms is None else max(0.0, float(tick_ms))
        self.step = max(1, int(step))
        self._cursor: Optional[RevealCursor] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def cursor(self) -> Optional[RevealCursor]:
        return self._cursor

    @property
    def active(self) -> bool:
        return self._cursor is not None and not self._cursor.done

    def reveal(self, full_text: str) -> AsyncIterator[str]:
        cursor = RevealCursor(full_text=full_text or "")
        self._cursor = cursor
        return self._ticks(cursor)

    async def _ticks(self, cursor: RevealCursor) -> AsyncIterator[str]:
        if not cursor.full_text:
            yield ""
            return
        delay = self.tick_ms / 1000.0
        while not cursor.done:
            await asyncio.sleep(delay)
            if self._cursor is not cursor:
                log.debug("reveal.superseded at=%d/%d", cursor.position, len(cursor.full_text))
                return
            yield cursor.advance(self.step)

    def start(self, full_text: str, on_prefix: Callable[[str], None]) -> asyncio.Task:
        """Run a reveal in a background task, feeding each prefix to ``on_prefix``."""
        self.cancel()
        ticks = self.reveal(full_text)

        async def _pump() -> None:
            async for prefix in ticks:
                on_prefix(prefix)

        self._task = asyncio.create_task(_pump())
        return self._task

    def cancel(self) -> None:
        self._cursor = None
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
