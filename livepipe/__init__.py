"""
LivePipe

Watches text extracted from the screen, decides whether any fragment is
something the user should act on or remember, and routes qualifying fragments
to notification and storage sinks while suppressing duplicates.

Key Components:
- ConfigStore: Validated, hot-reloadable pipe.json settings
- ChangeDetector / aggregate_batches: Cut the OCR stream into batches
- IntentClassifier: Local model + deterministic guard rules
- DedupStore: Two-track near-duplicate gate
- ReviewGate: Optional two-stage cloud review
- Notifier: Parallel desktop/webhook fan-out
"""

__version__ = "0.1.0"
