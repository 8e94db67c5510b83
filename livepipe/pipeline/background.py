"""
Bounded runner for fire-and-forget side effects (reminder and note sync).

The pipeline submits a coroutine and moves on; at most `limit` of them run at
once. Failures are logged and kept in a short recent-errors list for the
status endpoint.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Awaitable, Deque, Dict, Set

logger = logging.getLogger("livepipe.pipeline.background")

DEFAULT_CONCURRENCY = 4
MAX_RECENT_ERRORS = 20


class BackgroundRunner:
    def __init__(self, limit: int = DEFAULT_CONCURRENCY):
        self._semaphore = asyncio.Semaphore(limit)
        self._tasks: Set[asyncio.Task] = set()
        self.recent_errors: Deque[Dict[str, str]] = deque(maxlen=MAX_RECENT_ERRORS)
        self.completed = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, name: str, coro: Awaitable) -> asyncio.Task:
        """Schedule coro without awaiting it"""
        task = asyncio.ensure_future(self._run(name, coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, coro: Awaitable) -> None:
        async with self._semaphore:
            try:
                await coro
                self.completed += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Background task %s failed: %s", name, e)
                self.recent_errors.append({
                    "task": name,
                    "error": str(e) or type(e).__name__,
                    "at": datetime.now(timezone.utc).isoformat(),
                })

    async def drain(self) -> None:
        """Wait for everything submitted so far"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.drain()
