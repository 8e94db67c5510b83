"""
Structured per-cycle log.

Each poll tick or hotkey trigger collects one line per stage and emits a
single block at the end, so a terminal shows one readable unit per cycle.
Errors are annotated at the stage where they happened.

Set LIVEPIPE_DEBUG=1 to also see detailed inner-module logs.
"""

import logging
import os
import time
from typing import List, Optional

from ..common.schemas import DedupResult, IntentResult, NotifyResult, ReviewOutcome

logger = logging.getLogger("livepipe.pipeline.cycle")


def is_debug() -> bool:
    return os.getenv("LIVEPIPE_DEBUG") == "1"


def configure_logging(level: Optional[int] = None) -> None:
    """Root logging setup for the service process"""
    if level is None:
        level = logging.DEBUG if is_debug() else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    # the cycle block carries its own layout
    cycle = logging.getLogger("livepipe.pipeline.cycle")
    if not cycle.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        cycle.addHandler(handler)
        cycle.propagate = False
    cycle.setLevel(logging.INFO)
    # keep third-party request logs out of the cycle view
    logging.getLogger("httpx").setLevel(logging.DEBUG if is_debug() else logging.WARNING)


def _clip(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


class CycleLog:
    """Collects stage lines for one pipeline pass"""

    def __init__(self, mode: str, seq: int):
        self.mode = mode  # "poll" | "hotkey"
        self.seq = seq
        self.lines: List[str] = []
        self._start = time.monotonic()
        self._flushed = False

    @property
    def label(self) -> str:
        return f"{'POLL' if self.mode == 'poll' else 'HOTKEY'} #{self.seq}"

    @property
    def flushed(self) -> bool:
        return self._flushed

    def skip(self, reason: str) -> None:
        """One-line form for cycles that did nothing; flushes immediately"""
        if self._flushed:
            return
        logger.info("╭─ %s ──── %s ───╯", self.label, reason)
        self._flushed = True

    def fetch(self, total: int, kept: int, apps, chars: int, skipped: Optional[dict] = None) -> None:
        filters = []
        for key, short in (("app", "app"), ("window", "win"), ("short", "short"), ("dedup", "dup"), ("time", "time")):
            count = (skipped or {}).get(key, 0)
            if count:
                filters.append(f"{short}:-{count}")
        suffix = f" ({' '.join(filters)})" if filters else ""
        self.lines.append(
            f"│ ① FETCH   {total} items → {kept} kept [{', '.join(sorted(apps))}] {chars} chars{suffix}"
        )

    def no_change(self, ratio: float) -> None:
        self.lines.append(f"│ ② CHANGE  {ratio * 100:.0f}% < threshold, skipped")

    def change(self, ratio: float) -> None:
        self.lines.append(f"│ ② CHANGE  {ratio * 100:.0f}% changed")

    def intent(self, intent: IntentResult, latency_ms: Optional[int] = None) -> None:
        flags = [f"actionable={str(intent.actionable).lower()}", f"noteworthy={str(intent.noteworthy).lower()}"]
        if intent.urgent:
            flags.append("urgent")
        timing = f" ({latency_ms}ms)" if latency_ms is not None else ""
        self.lines.append(f"│ ② INTENT  {' '.join(flags)}{timing}")
        if intent.content:
            self.lines.append(f'│            "{_clip(intent.content, 70)}"')
        if intent.due_time:
            self.lines.append(f"│            due={intent.due_time}")

    def intent_skip(self, reason: str) -> None:
        self.lines.append(f"│ ② INTENT  {reason}")

    def dedup(self, track: str, result: DedupResult) -> None:
        if result.passed:
            self.lines.append(
                f"│ ③ DEDUP   {track} ✓ passed ({result.cache_size} entries, threshold={result.threshold * 100:.0f}%)"
            )
        else:
            detail = f"{result.similarity * 100:.0f}% match" if result.similarity is not None else result.reason
            self.lines.append(f"│ ③ DEDUP   {track} ✗ duplicate ({detail}), skipped")

    def review(self, outcome: ReviewOutcome, source: str = "") -> None:
        for stage in outcome.stages:
            self.lines.append(f"│ ④ REVIEW  stage{stage.stage}: {stage.outcome} ({stage.latency_ms}ms)")
        if outcome.rejected:
            self.lines.append("│ ④ REVIEW  ✗ rejected")
        elif outcome.final_content:
            due = f" due={outcome.final_due_time}" if outcome.final_due_time else ""
            self.lines.append(f'│            → "{_clip(outcome.final_content, 60)}"{due}')
        if source:
            self.lines.append(f"│            via {source}")

    def review_skipped(self) -> None:
        self.lines.append("│ ④ REVIEW  (disabled)")

    def review_error(self, message: str, fail_open: bool) -> None:
        self.lines.append(f"│ ④ REVIEW  error: {message}")
        self.lines.append(f"│ ④ REVIEW  {'fail-open: pass-through' if fail_open else 'fail-closed: dropped'}")

    def notify(self, result: NotifyResult, synced: Optional[List[str]] = None) -> None:
        parts = []
        if result.desktop:
            parts.append("desktop")
        if result.webhooks:
            parts.append("+".join(result.webhooks))
        self.lines.append(
            f"│ ⑤ NOTIFY  ✓ {' + '.join(parts)}" if parts else "│ ⑤ NOTIFY  (no external notification)"
        )
        for name in synced or []:
            self.lines.append(f"│           ↻ {name} sync queued")
        for err in result.errors:
            self.lines.append(f"│           ✗ {err}")

    def error(self, stage: str, message: str) -> None:
        self.lines.append(f"│ {stage}  error: {message}")

    def info(self, text: str) -> None:
        self.lines.append(f"│ {text}")

    def flush(self) -> None:
        if self._flushed:
            return
        self._flushed = True

        elapsed = time.monotonic() - self._start
        header = f"╭─ {self.label} {'─' * max(0, 50 - len(self.label))}"
        footer = f"╰{'─' * 30} {elapsed:.1f}s total"
        logger.info("\n".join([header, *self.lines, footer]))
