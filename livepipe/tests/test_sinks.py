"""Tests for the Reminders and Notes sync sinks."""

import logging
from datetime import datetime
from unittest.mock import AsyncMock, Mock

import pytest

from livepipe.common.config import NotesConfig, PipeConfig, RemindersConfig
from livepipe.common.errors import DeliveryError
from livepipe.common.schemas import TaskEntry
from livepipe.pipeline.sinks import NotesSink, RemindersSink, ScriptResult, escape_jxa
from livepipe.pipeline.sinks.notes import daily_note_title, format_note_line
from livepipe.pipeline.sinks.reminders import build_create_reminder_script, normalize_due_date


def _store(**sections):
    store = Mock()
    store.get.return_value = PipeConfig(**sections)
    return store


def _bridge(*results):
    bridge = Mock()
    bridge.run = AsyncMock(side_effect=list(results) or None, return_value=ScriptResult(ok=True, id="r-1"))
    return bridge


ENTRY = TaskEntry(content='Pay "rent"', detected="2024-05-10T01:00:00.000Z", urgent=True, due_time="2024-05-11T15:00")


class TestScripts:
    def test_escape(self):
        assert escape_jxa('a "b"\nc\\d') == 'a \\"b\\"\\nc\\\\d'

    def test_reminder_script_literals(self):
        script = build_create_reminder_script("Work", 'Pay "rent"', body=None, due_date="2024-05-11T15:00:00", priority=1)
        assert 'const reminderName = "Pay \\"rent\\"";' in script
        assert "const reminderBody = null;" in script
        assert "const reminderPriority = 1;" in script

    def test_normalize_due_date(self):
        assert normalize_due_date("2024-05-11T15:00") == "2024-05-11T15:00:00"
        assert normalize_due_date("tomorrow") is None
        assert normalize_due_date(None) is None

    def test_note_format(self):
        moment = datetime(2024, 5, 10, 14, 5)
        assert daily_note_title(moment) == "LivePipe 2024-05-10"
        assert format_note_line("Use Postgres", "Slack", moment) == "[14:05] Use Postgres — 来源: Slack"


class TestRemindersSink:
    @pytest.mark.asyncio
    async def test_list_ensured_once(self):
        bridge = _bridge()
        sink = RemindersSink(_store(reminders=RemindersConfig(enabled=True, list="Work")), bridge, platform="darwin")

        assert await sink.sync_task(ENTRY) == "r-1"
        assert await sink.sync_task(ENTRY) == "r-1"

        assert bridge.run.await_count == 3
        create_script = bridge.run.await_args_list[1].args[0]
        assert 'const listName = "Work";' in create_script
        assert 'const dueDateIso = "2024-05-11T15:00:00";' in create_script
        assert "const reminderPriority = 1;" in create_script

    @pytest.mark.asyncio
    async def test_disabled_skips(self):
        bridge = _bridge()
        sink = RemindersSink(_store(), bridge, platform="darwin")
        assert await sink.sync_task(ENTRY) is None
        bridge.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_non_macos_warns_once(self, caplog):
        bridge = _bridge()
        sink = RemindersSink(_store(reminders=RemindersConfig(enabled=True)), bridge, platform="linux")

        with caplog.at_level(logging.WARNING, logger="livepipe.pipeline.sinks"):
            await sink.sync_task(ENTRY)
            await sink.sync_task(ENTRY)

        assert caplog.text.count("not macOS") == 1
        bridge.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_script_failure_raises(self):
        bridge = _bridge(ScriptResult(ok=True), ScriptResult(ok=False, error="access denied"))
        sink = RemindersSink(_store(reminders=RemindersConfig(enabled=True)), bridge, platform="darwin")

        with pytest.raises(DeliveryError, match="access denied"):
            await sink.sync_task(ENTRY)

    @pytest.mark.asyncio
    async def test_empty_name_rejected(self):
        sink = RemindersSink(_store(), _bridge(), platform="darwin")
        with pytest.raises(DeliveryError):
            await sink.create_reminder("Work", "   ")


class TestNotesSink:
    @pytest.mark.asyncio
    async def test_appends_daily_note(self):
        bridge = _bridge()
        sink = NotesSink(_store(notes=NotesConfig(enabled=True, folder="Memos")), bridge, platform="darwin")

        assert await sink.sync_memo("We agreed on Friday release", "Slack", datetime(2024, 5, 10, 14, 5))

        script = bridge.run.await_args.args[0]
        assert 'const folderName = "Memos";' in script
        assert 'const noteTitle = "LivePipe 2024-05-10";' in script
        assert "We agreed on Friday release" in script

    @pytest.mark.asyncio
    async def test_disabled_skips(self):
        bridge = _bridge()
        assert not await NotesSink(_store(), bridge, platform="darwin").sync_memo("x", "y")
        bridge.run.assert_not_awaited()
