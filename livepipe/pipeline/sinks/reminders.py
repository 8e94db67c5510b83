"""Reminders.app sync for actionable tasks."""

import logging
from datetime import datetime
from typing import Optional, Set

from ...common.config import ConfigStore, RemindersConfig
from ...common.errors import DeliveryError
from ...common.schemas import TaskEntry
from .base import ScriptBridge, SyncSink, jxa_literal

logger = logging.getLogger("livepipe.pipeline.sinks.reminders")

_FIND_LIST = """
  function findListByName(targetName) {
    const lists = app.lists();
    for (let i = 0; i < lists.length; i++) {
      try {
        if (lists[i].name() === targetName) return lists[i];
      } catch (_) {}
    }
    return null;
  }
"""


def build_ensure_list_script(list_name: str) -> str:
    return f"""
function run() {{
  const app = Application("/System/Applications/Reminders.app");
  const listName = {jxa_literal(list_name)};
{_FIND_LIST}
  try {{
    if (!findListByName(listName)) {{
      app.make({{ new: "list", withProperties: {{ name: listName }} }});
    }}
    return JSON.stringify({{ ok: true }});
  }} catch (error) {{
    return JSON.stringify({{ ok: false, error: String(error) }});
  }}
}}
"""


def build_create_reminder_script(
    list_name: str,
    name: str,
    body: Optional[str] = None,
    due_date: Optional[str] = None,
    priority: Optional[int] = None,
) -> str:
    return f"""
function run() {{
  const app = Application("/System/Applications/Reminders.app");
  const listName = {jxa_literal(list_name)};
  const reminderName = {jxa_literal(name)};
  const reminderBody = {jxa_literal(body)};
  const dueDateIso = {jxa_literal(due_date)};
  const reminderPriority = {jxa_literal(priority)};
{_FIND_LIST}
  try {{
    let targetList = findListByName(listName);
    if (!targetList) {{
      targetList = app.make({{ new: "list", withProperties: {{ name: listName }} }});
    }}
    const props = {{ name: reminderName }};
    if (reminderBody !== null) props.body = reminderBody;
    if (dueDateIso !== null) props.dueDate = new Date(dueDateIso);
    if (reminderPriority !== null) props.priority = reminderPriority;
    const reminder = app.make({{ new: "reminder", at: targetList, withProperties: props }});
    return JSON.stringify({{ ok: true, id: String(reminder.id()) }});
  }} catch (error) {{
    return JSON.stringify({{ ok: false, error: String(error) }});
  }}
}}
"""


def urgency_to_priority(urgent: bool) -> int:
    return 1 if urgent else 0


def normalize_due_date(due_time: Optional[str]) -> Optional[str]:
    """Local YYYY-MM-DDTHH:MM, or None when missing or unparsable"""
    if not due_time:
        return None
    try:
        return datetime.strptime(due_time, "%Y-%m-%dT%H:%M").strftime("%Y-%m-%dT%H:%M:00")
    except ValueError:
        return None


class RemindersSink(SyncSink):
    def __init__(
        self,
        config_store: Optional[ConfigStore] = None,
        bridge: Optional[ScriptBridge] = None,
        **kwargs,
    ):
        super().__init__("reminders", bridge, **kwargs)
        self._config_store = config_store
        self._ensured_lists: Set[str] = set()

    def _settings(self) -> RemindersConfig:
        if self._config_store is None:
            return RemindersConfig()
        return self._config_store.get().reminders

    async def ensure_list(self, list_name: str) -> None:
        await self._run(build_ensure_list_script(list_name), "ensure list")

    async def create_reminder(self, list_name: str, name: str, **fields) -> str:
        name = name.strip()
        if not name:
            raise DeliveryError(self.name, "reminder name cannot be empty")
        result = await self._run(build_create_reminder_script(list_name, name, **fields), "create reminder")
        return result.id or ""

    async def sync_task(self, entry: TaskEntry) -> Optional[str]:
        """Create a reminder for a recorded task. Returns its id, or None when skipped."""
        settings = self._settings()
        if not self._should_sync(settings.enabled):
            return None

        list_name = settings.list.strip()
        if list_name not in self._ensured_lists:
            await self.ensure_list(list_name)
            self._ensured_lists.add(list_name)

        due_date = normalize_due_date(entry.due_time)
        if entry.due_time and not due_date:
            logger.warning("Invalid due_time %r, creating reminder without due date", entry.due_time)

        reminder_id = await self.create_reminder(
            list_name,
            entry.content,
            body=f"detected: {entry.detected}",
            due_date=due_date,
            priority=urgency_to_priority(entry.urgent),
        )
        logger.info("Synced task to list %r (id=%s)", list_name, reminder_id or "?")
        return reminder_id
