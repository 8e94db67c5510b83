"""
Intent Pipeline Schemas

IntentResult is the canonical unit flowing through dedup, review and
notification. The remaining types are cycle-scoped records exchanged between
stages.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Set

from pydantic import BaseModel, Field, field_validator

CONTENT_MAX_CHARS = 200

_DUE_TIME_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})[T ](\d{2}:\d{2})")


def normalize_due_time(value) -> Optional[str]:
    """Reduce a model-provided timestamp to YYYY-MM-DDTHH:MM, or None"""
    if not isinstance(value, str):
        return None
    m = _DUE_TIME_RE.match(value.strip())
    if not m:
        return None
    return f"{m.group(1)}T{m.group(2)}"


# ============================================================================
# Intent
# ============================================================================

class IntentResult(BaseModel):
    """Structured intent for one batch"""
    actionable: bool = False
    noteworthy: bool = False
    content: str = ""
    due_time: Optional[str] = Field(default=None, description="YYYY-MM-DDTHH:MM or null")
    urgent: bool = False

    @field_validator("content", mode="before")
    @classmethod
    def _truncate_content(cls, v):
        if v is None:
            return ""
        return str(v).strip()[:CONTENT_MAX_CHARS]

    @field_validator("due_time", mode="before")
    @classmethod
    def _normalize_due(cls, v):
        return normalize_due_time(v)

    @property
    def is_empty(self) -> bool:
        return not (self.actionable or self.noteworthy)

    def copy_with(self, **changes) -> "IntentResult":
        """New validated instance with the given fields replaced"""
        data = self.model_dump()
        data.update(changes)
        return IntentResult(**data)


# ============================================================================
# Capture / batching
# ============================================================================

@dataclass(frozen=True)
class Sample:
    """One timestamped OCR text sample"""
    text: str
    app_name: str = ""
    window_name: str = ""
    timestamp_ms: int = 0


@dataclass(frozen=True)
class TextEvent:
    """A text change forwarded by the change detector"""
    text: str
    apps: Set[str] = field(default_factory=set)
    timestamp_ms: int = 0


@dataclass
class Batch:
    """Texts accumulated over one window (or one hotkey fetch)"""
    texts: List[str] = field(default_factory=list)
    apps: Set[str] = field(default_factory=set)
    start_time: float = 0.0
    end_time: float = 0.0

    @property
    def combined_text(self) -> str:
        return "\n".join(self.texts)

    @property
    def app_label(self) -> str:
        return ", ".join(sorted(self.apps)) or "unknown"


# ============================================================================
# Dedup / tasks
# ============================================================================

@dataclass(frozen=True)
class DedupEntry:
    content: str
    detected_at: str  # ISO timestamp


@dataclass
class DedupResult:
    passed: bool
    reason: str
    cache_size: int
    threshold: float
    similarity: Optional[float] = None
    matched: Optional[str] = None


@dataclass
class TaskEntry:
    """A persisted actionable intent"""
    content: str
    detected: str
    urgent: bool = False
    due_time: Optional[str] = None
    completed: bool = False


# ============================================================================
# Review / notification
# ============================================================================

@dataclass
class ReviewStage:
    stage: int  # 1 | 2
    latency_ms: int
    outcome: str


@dataclass
class ReviewOutcome:
    stages: List[ReviewStage] = field(default_factory=list)
    final_content: Optional[str] = None
    final_due_time: Optional[str] = None
    rejected: bool = False


@dataclass
class ReviewResult:
    intent: Optional[IntentResult]
    outcome: ReviewOutcome


@dataclass
class NotifyResult:
    desktop: bool = False
    webhooks: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
