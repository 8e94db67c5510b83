"""
Task Log

Human-readable record of actionable intents in tasks.md, grouped by the day
they were detected, newest day first. Any mutation rewrites the whole file.
"""

import logging
import re
from datetime import datetime, tzinfo
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..common.config import TASKS_PATH
from ..common.schemas import IntentResult, TaskEntry
from .dedup import format_timestamp, parse_timestamp, utc_now

logger = logging.getLogger("livepipe.pipeline.task_log")

TITLE = "# LivePipe Tasks"

_TASK_LINE_RE = re.compile(r"^- \[([ x])\] (.+)$")


def parse_task_line(line: str) -> Optional[TaskEntry]:
    m = _TASK_LINE_RE.match(line.strip())
    if not m:
        return None

    status, payload = m.groups()
    segments = [s.strip() for s in payload.split(" | ") if s.strip()]
    if not segments:
        return None

    entry = TaskEntry(content=segments[0], detected=format_timestamp(utc_now()), completed=status == "x")
    for segment in segments[1:]:
        if segment.startswith("urgent:"):
            entry.urgent = segment[len("urgent:"):].strip() == "true"
        elif segment.startswith("type:"):
            # legacy lines carried a type; deadlines were the urgent ones
            if segment[len("type:"):].strip() == "deadline":
                entry.urgent = True
        elif segment.startswith("due:"):
            entry.due_time = segment[len("due:"):].strip() or None
        elif segment.startswith("detected:"):
            entry.detected = segment[len("detected:"):].strip() or entry.detected
    return entry


def is_past(due_time: str, now: datetime) -> bool:
    """due_time is local wall-clock YYYY-MM-DDTHH:MM"""
    try:
        due = datetime.strptime(due_time, "%Y-%m-%dT%H:%M")
    except ValueError:
        return False
    return due < now.astimezone().replace(tzinfo=None)


def clean_content(content: str) -> str:
    """Task content must fit on one line and never contain the segment separator"""
    return re.sub(r"\s+", " ", content).strip().replace("|", "/")


def format_task_line(entry: TaskEntry) -> str:
    check = "x" if entry.completed else " "
    line = f"- [{check}] {clean_content(entry.content)} | urgent:{'true' if entry.urgent else 'false'}"
    if entry.due_time:
        line += f" | due:{entry.due_time}"
    line += f" | detected:{entry.detected}"
    return line


def local_day(detected: str, tz: Optional[tzinfo] = None) -> str:
    """Calendar day of a UTC detected timestamp in local time"""
    moment = parse_timestamp(detected)
    if moment is None:
        return detected[:10]
    return moment.astimezone(tz).strftime("%Y-%m-%d")


def render_tasks(entries: List[TaskEntry], tz: Optional[tzinfo] = None) -> str:
    by_date: Dict[str, List[TaskEntry]] = {}
    for entry in entries:
        by_date.setdefault(local_day(entry.detected, tz), []).append(entry)

    out = TITLE + "\n"
    for date in sorted(by_date, reverse=True):
        out += f"\n## {date}\n\n"
        for entry in by_date[date]:
            out += format_task_line(entry) + "\n"
    return out


class TaskLog:
    """tasks.md backed list of TaskEntry"""

    def __init__(self, path: Optional[Path] = None, clock: Callable[[], datetime] = utc_now):
        self.path = Path(path) if path else TASKS_PATH
        self._clock = clock
        self._entries: List[TaskEntry] = []
        self._loaded = False

    @property
    def entries(self) -> List[TaskEntry]:
        self._ensure_loaded()
        return self._entries

    def load(self) -> List[TaskEntry]:
        self._entries = []
        self._loaded = True
        if self.path.exists():
            with open(self.path, "r", encoding="utf-8") as f:
                for line in f:
                    entry = parse_task_line(line)
                    if entry:
                        self._entries.append(entry)
            logger.debug("Loaded %d tasks", len(self._entries))
        return self._entries

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def record(self, intent: IntentResult) -> Optional[TaskEntry]:
        """Append an actionable intent. A due time already in the past is dropped."""
        if not intent.actionable:
            return None
        self._ensure_loaded()

        now = self._clock()
        due_time = intent.due_time
        if due_time and is_past(due_time, now):
            logger.debug("due_time %s is in the past, clearing", due_time)
            due_time = None

        entry = TaskEntry(
            content=clean_content(intent.content),
            urgent=intent.urgent,
            due_time=due_time,
            detected=format_timestamp(now),
        )
        self._entries.append(entry)
        self._rewrite()
        return entry

    def mark_complete(self, index: int) -> bool:
        self._ensure_loaded()
        if index < 0 or index >= len(self._entries):
            return False
        self._entries[index].completed = True
        self._rewrite()
        return True

    def _rewrite(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(render_tasks(self._entries), encoding="utf-8")
