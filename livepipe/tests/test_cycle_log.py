"""Tests for the per-cycle log block and background runner."""

import asyncio
import logging

import pytest

from livepipe.common.schemas import DedupResult, IntentResult, NotifyResult
from livepipe.pipeline.background import BackgroundRunner
from livepipe.pipeline.cycle_log import CycleLog


class TestCycleLog:
    def test_skip_is_one_line(self, caplog):
        with caplog.at_level(logging.INFO, logger="livepipe.pipeline.cycle"):
            log = CycleLog("poll", 7)
            log.skip("no data")
            log.flush()

        assert len(caplog.records) == 1
        assert "POLL #7" in caplog.text
        assert "no data" in caplog.text

    def test_block(self, caplog):
        with caplog.at_level(logging.INFO, logger="livepipe.pipeline.cycle"):
            log = CycleLog("hotkey", 2)
            log.fetch(5, 3, {"Slack"}, 120, {"app": 1, "short": 1})
            log.intent(IntentResult(actionable=True, urgent=True, content="Pay rent"), 340)
            log.dedup("actionable", DedupResult(passed=True, reason="new content", cache_size=4, threshold=0.6))
            log.review_skipped()
            log.notify(NotifyResult(desktop=True, webhooks=["feishu"]), ["reminders"])
            log.flush()

        assert len(caplog.records) == 1
        block = caplog.records[0].getMessage()
        assert block.startswith("╭─ HOTKEY #2")
        assert "5 items → 3 kept [Slack] 120 chars (app:-1 short:-1)" in block
        assert "actionable=true noteworthy=false urgent (340ms)" in block
        assert "threshold=60%" in block
        assert "desktop + feishu" in block
        assert "reminders sync queued" in block
        assert "s total" in block.splitlines()[-1]

    def test_duplicate_line(self):
        log = CycleLog("poll", 1)
        log.dedup("noteworthy", DedupResult(passed=False, reason="91% match", cache_size=2, threshold=0.8, similarity=0.91))
        assert log.lines == ["│ ③ DEDUP   noteworthy ✗ duplicate (91% match), skipped"]


class TestBackgroundRunner:
    @pytest.mark.asyncio
    async def test_failures_recorded(self):
        runner = BackgroundRunner(limit=2)

        async def ok():
            await asyncio.sleep(0)

        async def boom():
            raise RuntimeError("osascript failed")

        runner.submit("notes", ok())
        runner.submit("reminders", boom())
        await runner.drain()

        assert runner.completed == 1
        assert runner.pending == 0
        assert runner.recent_errors[0]["task"] == "reminders"
        assert runner.recent_errors[0]["error"] == "osascript failed"

    @pytest.mark.asyncio
    async def test_concurrency_limit(self):
        runner = BackgroundRunner(limit=1)
        active = []
        peak = []

        async def job():
            active.append(1)
            peak.append(len(active))
            await asyncio.sleep(0.01)
            active.pop()

        for _ in range(3):
            runner.submit("job", job())
        await runner.drain()

        assert max(peak) == 1
