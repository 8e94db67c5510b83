"""
Batch Aggregator

Collapses a stream of text-change events into time-boxed batches. A single
task races "next upstream event" against "window expiry"; whichever finishes
first is handled and the race is re-armed. The pending upstream read survives
a lost race, so no event is dropped when the timer wins.
"""

import asyncio
import logging
import time
from typing import AsyncIterator, List

from ..common.schemas import Batch, TextEvent

logger = logging.getLogger("livepipe.pipeline.batch_aggregator")

BATCH_WINDOW_S = 5.0
MAX_BATCH_CHARS = 2000


def truncate_texts(texts: List[str], max_chars: int = MAX_BATCH_CHARS) -> List[str]:
    """Greedily keep whole texts until the budget is exhausted.

    A first text that alone exceeds the budget is cut to fit so a batch is
    never emptied by truncation.
    """
    if sum(len(t) for t in texts) <= max_chars:
        return list(texts)

    kept: List[str] = []
    used = 0
    for text in texts:
        if used + len(text) > max_chars:
            break
        kept.append(text)
        used += len(text)

    if not kept and texts:
        kept.append(texts[0][:max_chars])
    return kept


async def _next_event(iterator: AsyncIterator[TextEvent]) -> TextEvent:
    return await iterator.__anext__()


async def aggregate_batches(
    events: AsyncIterator[TextEvent],
    window_s: float = BATCH_WINDOW_S,
    max_chars: int = MAX_BATCH_CHARS,
) -> AsyncIterator[Batch]:
    """Yield at most one Batch per window, only for windows that saw an event.

    Runs until the upstream iterator is exhausted; whatever is pending then is
    flushed as a final batch.
    """
    loop = asyncio.get_running_loop()
    iterator = events.__aiter__()

    def new_batch() -> Batch:
        now = time.time()
        return Batch(start_time=now, end_time=now)

    current = new_batch()
    deadline = loop.time() + window_s
    pending = None

    try:
        while True:
            if pending is None:
                pending = asyncio.ensure_future(_next_event(iterator))

            remaining = max(deadline - loop.time(), 0)
            done, _ = await asyncio.wait({pending}, timeout=remaining)

            if pending in done:
                task, pending = pending, None
                try:
                    event = task.result()
                except StopAsyncIteration:
                    break
                arrived = event.timestamp_ms / 1000 if event.timestamp_ms else time.time()
                if not current.texts:
                    current.start_time = arrived
                current.texts.append(event.text)
                current.apps.update(event.apps)
                current.end_time = arrived
                continue

            # Window expired
            if current.texts:
                current.texts = truncate_texts(current.texts, max_chars)
                logger.debug(
                    "yielding batch: %d texts from [%s]", len(current.texts), current.app_label
                )
                yield current
                current = new_batch()
            deadline = loop.time() + window_s
    finally:
        if pending is not None and not pending.done():
            pending.cancel()

    if current.texts:
        current.texts = truncate_texts(current.texts, max_chars)
        yield current
