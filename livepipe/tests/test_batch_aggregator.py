"""Tests for time-windowed batch aggregation."""

import asyncio

import pytest

from livepipe.common.schemas import TextEvent
from livepipe.pipeline.batch_aggregator import aggregate_batches, truncate_texts


async def _events(script):
    """script: list of (delay_s, text)"""
    for delay, text in script:
        if delay:
            await asyncio.sleep(delay)
        yield TextEvent(text=text, apps={f"app-{text}"})


async def _collect(agen):
    return [batch async for batch in agen]


class TestTruncateTexts:
    def test_under_budget_untouched(self):
        assert truncate_texts(["a" * 10, "b" * 10], max_chars=100) == ["a" * 10, "b" * 10]

    def test_keeps_whole_texts(self):
        texts = ["a" * 1500, "b" * 1000]
        assert truncate_texts(texts, max_chars=2000) == ["a" * 1500]

    def test_oversized_first_text_is_cut(self):
        assert truncate_texts(["x" * 3000], max_chars=2000) == ["x" * 2000]


class TestAggregateBatches:
    @pytest.mark.asyncio
    async def test_groups_by_window(self):
        script = [(0, "a"), (0, "b"), (0.3, "c")]
        batches = await _collect(aggregate_batches(_events(script), window_s=0.1))

        assert [b.texts for b in batches] == [["a", "b"], ["c"]]
        assert batches[0].apps == {"app-a", "app-b"}

    @pytest.mark.asyncio
    async def test_no_empty_batches(self):
        async def silent():
            await asyncio.sleep(0.25)
            return
            yield

        batches = await _collect(aggregate_batches(silent(), window_s=0.05))
        assert batches == []

    @pytest.mark.asyncio
    async def test_event_arriving_at_expiry_is_not_lost(self):
        script = [(0.05, f"t{i}") for i in range(8)]
        batches = await _collect(aggregate_batches(_events(script), window_s=0.05))

        flattened = [t for b in batches for t in b.texts]
        assert flattened == [f"t{i}" for i in range(8)]

    @pytest.mark.asyncio
    async def test_batch_truncated(self):
        script = [(0, "a" * 1500), (0, "b" * 1000)]
        batches = await _collect(aggregate_batches(_events(script), window_s=0.05, max_chars=2000))
        assert batches[0].texts == ["a" * 1500]

    @pytest.mark.asyncio
    async def test_start_time_is_first_event(self):
        async def late_events():
            await asyncio.sleep(0.12)
            yield TextEvent(text="first", timestamp_ms=1_700_000_000_000)
            yield TextEvent(text="second", timestamp_ms=1_700_000_000_500)

        batches = await _collect(aggregate_batches(late_events(), window_s=0.05))

        assert [b.texts for b in batches] == [["first", "second"]]
        assert batches[0].start_time == 1_700_000_000.0
        assert batches[0].end_time == 1_700_000_000.5
