"""
Change Detector

Decides whether newly fetched OCR text differs enough from the previous
sample to be worth classifying. OCR output re-renders constantly with the
same lines in a different order, so text is compared as a set of lines.
"""

from dataclasses import dataclass
from typing import Optional

MIN_CHANGE_RATIO = 0.15


@dataclass
class ChangeResult:
    """Result of change detection"""
    should_process: bool
    ratio: float
    reason: str  # "empty" | "same" | "below-threshold" | "changed"
    text: Optional[str] = None


def _line_set(text: str) -> set:
    return {line.strip() for line in text.split("\n") if line.strip()}


def change_ratio(previous: str, new: str) -> float:
    """1 - |shared lines| / max(|A|, |B|, 1); 0 for identical text, 1 if either side is empty"""
    if previous == new:
        return 0.0
    if not previous or not new:
        return 1.0

    lines_a = _line_set(previous)
    lines_b = _line_set(new)
    same = len(lines_a & lines_b)
    total = max(len(lines_a), len(lines_b), 1)
    return 1 - same / total


def detect(previous_text: str, new_text: str, threshold: float = MIN_CHANGE_RATIO) -> ChangeResult:
    """One-off comparison against an explicit baseline"""
    detector = ChangeDetector(threshold)
    detector.rebase(previous_text)
    return detector.detect(new_text)


class ChangeDetector:
    """
    Stateful detector holding the baseline text.

    Sub-threshold changes still replace the baseline so slow drift does not
    accumulate into a large apparent change later.
    """

    def __init__(self, threshold: float = MIN_CHANGE_RATIO):
        self._threshold = threshold
        self._last_text = ""

    @property
    def threshold(self) -> float:
        return self._threshold

    @property
    def last_text(self) -> str:
        return self._last_text

    def reset(self) -> None:
        self._last_text = ""

    def rebase(self, text: str) -> None:
        self._last_text = (text or "").strip()

    def detect(self, new_text: str) -> ChangeResult:
        trimmed = (new_text or "").strip()
        if not trimmed:
            return ChangeResult(should_process=False, ratio=0.0, reason="empty")
        if trimmed == self._last_text:
            return ChangeResult(should_process=False, ratio=0.0, reason="same")

        ratio = change_ratio(self._last_text, trimmed)
        self._last_text = trimmed

        if ratio < self._threshold:
            return ChangeResult(should_process=False, ratio=ratio, reason="below-threshold")

        return ChangeResult(should_process=True, ratio=ratio, reason="changed", text=trimmed)
