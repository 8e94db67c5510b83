"""
LivePipe Pipeline - screen text to intent

Key Components:
- ChangeDetector / aggregate_batches: turn polled OCR into batches worth classifying
- IntentClassifier: local model + deterministic guards
- DedupStore: per-track near-duplicate suppression
- ReviewGate: optional two-stage cloud review
- Notifier / sinks: desktop, webhooks, Reminders, Notes
- IntentPipeline: drives everything (poll loop and hotkey trigger)
"""

from .change_detector import ChangeDetector, ChangeResult
from .batch_aggregator import aggregate_batches
from .classifier import IntentClassifier
from .dedup import DedupStore
from .review_gate import ReviewGate, ReviewContext
from .notifier import Notifier
from .task_log import TaskLog
from .runner import IntentPipeline

__all__ = [
    "ChangeDetector",
    "ChangeResult",
    "aggregate_batches",
    "IntentClassifier",
    "DedupStore",
    "ReviewGate",
    "ReviewContext",
    "Notifier",
    "TaskLog",
    "IntentPipeline",
]
