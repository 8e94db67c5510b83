"""
LivePipe Schemas
"""

from .intent import (
    IntentResult,
    Sample,
    TextEvent,
    Batch,
    DedupEntry,
    DedupResult,
    TaskEntry,
    ReviewStage,
    ReviewOutcome,
    ReviewResult,
    NotifyResult,
    normalize_due_time,
    CONTENT_MAX_CHARS,
)

__all__ = [
    "IntentResult",
    "Sample",
    "TextEvent",
    "Batch",
    "DedupEntry",
    "DedupResult",
    "TaskEntry",
    "ReviewStage",
    "ReviewOutcome",
    "ReviewResult",
    "NotifyResult",
    "normalize_due_time",
    "CONTENT_MAX_CHARS",
]
