"""Notes.app sync for noteworthy items: one note per day, one line per item."""

import logging
from datetime import datetime
from typing import Optional

from ...common.config import ConfigStore, NotesConfig
from .base import ScriptBridge, SyncSink, jxa_literal

logger = logging.getLogger("livepipe.pipeline.sinks.notes")


def daily_note_title(moment: datetime) -> str:
    return f"LivePipe {moment.strftime('%Y-%m-%d')}"


def format_note_line(content: str, source_app: str, moment: datetime) -> str:
    return f"[{moment.strftime('%H:%M')}] {content} — 来源: {source_app or 'unknown'}"


def build_append_daily_note_script(folder: str, title: str, line: str) -> str:
    return f"""
function run() {{
  const app = Application("Notes");
  const folderName = {jxa_literal(folder)};
  const noteTitle = {jxa_literal(title)};
  const appendLine = {jxa_literal(line)};

  function findByName(items, targetName) {{
    for (let i = 0; i < items.length; i++) {{
      try {{
        if (items[i].name() === targetName) return items[i];
      }} catch (_) {{}}
    }}
    return null;
  }}

  try {{
    let folder = findByName(app.folders(), folderName);
    if (!folder) {{
      folder = app.make({{ new: "folder", withProperties: {{ name: folderName }} }});
    }}
    let note = findByName(folder.notes(), noteTitle);
    if (!note) {{
      app.make({{ new: "note", at: folder, withProperties: {{ name: noteTitle, body: appendLine }} }});
    }} else {{
      note.body = note.body() + "\\n" + appendLine;
    }}
    return JSON.stringify({{ ok: true }});
  }} catch (error) {{
    return JSON.stringify({{ ok: false, error: String(error) }});
  }}
}}
"""


class NotesSink(SyncSink):
    def __init__(
        self,
        config_store: Optional[ConfigStore] = None,
        bridge: Optional[ScriptBridge] = None,
        **kwargs,
    ):
        super().__init__("notes", bridge, **kwargs)
        self._config_store = config_store

    def _settings(self) -> NotesConfig:
        if self._config_store is None:
            return NotesConfig()
        return self._config_store.get().notes

    async def sync_memo(self, content: str, source_app: str, detected_at: Optional[datetime] = None) -> bool:
        """Append to today's note. Returns False when skipped."""
        settings = self._settings()
        if not self._should_sync(settings.enabled):
            return False

        moment = (detected_at or datetime.now()).astimezone()
        folder = settings.folder.strip()
        title = daily_note_title(moment)
        line = format_note_line(content, source_app, moment)

        await self._run(build_append_daily_note_script(folder, title, line), "append note")
        logger.info("Synced memo to folder %r note %r", folder, title)
        return True
