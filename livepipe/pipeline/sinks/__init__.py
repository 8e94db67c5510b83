"""OS-level sync sinks driven through the JXA scripting bridge."""

from .base import ScriptBridge, ScriptResult, SyncSink, escape_jxa
from .notes import NotesSink
from .reminders import RemindersSink
