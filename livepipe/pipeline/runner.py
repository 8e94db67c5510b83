"""
Intent Pipeline

Owns every stage and drives them from two entry points:

- run_poll_loop(): fetch -> change detect -> batch -> classify -> dedup ->
  review -> notify, one tick per poll interval
- trigger_once(): one synchronous pass over the latest captured frames
  (hotkey), independent of the poll loop

Both entry points share the dedup store and read the live config snapshot.
"""

import asyncio
import logging
import time
from dataclasses import asdict
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from ..common.config import ConfigChangeEvent, ConfigStore, PipeConfig, ReviewConfig
from ..common.errors import CaptureError, ClassificationError, ReviewError
from ..common.llm_client import CLOUD_PROVIDERS, LLMClient, normalize_provider
from ..common.schemas import Batch, IntentResult, NotifyResult, TextEvent
from .background import BackgroundRunner
from .batch_aggregator import BATCH_WINDOW_S, aggregate_batches
from .capture import (
    DEFAULT_QUERY_LIMIT,
    HOTKEY_LOOKBACK_MS,
    HOTKEY_QUERY_LIMIT,
    SampleFilter,
    ScreenpipeClient,
    extract_snippet,
    poll_window,
)
from .change_detector import ChangeDetector
from .classifier import IntentClassifier
from .cycle_log import CycleLog
from .dedup import ACTIONABLE, NOTEWORTHY, DedupStore
from .notifier import Notifier
from .review_gate import ReviewContext, ReviewGate
from .sinks import NotesSink, RemindersSink
from .task_log import TaskLog

logger = logging.getLogger("livepipe.pipeline.runner")


def build_review_gate(review: ReviewConfig) -> Optional[ReviewGate]:
    """ReviewGate for the current review settings, or None when review is off or misconfigured"""
    if not review.enabled or not review.api_key:
        return None
    if not review.provider or not review.model:
        logger.error("review.provider and review.model must be configured in pipe.json")
        return None

    provider = normalize_provider(review.provider)
    if provider not in CLOUD_PROVIDERS:
        logger.error("Unknown review provider: %s", review.provider)
        return None

    llm = LLMClient(provider=provider, model=review.model, api_key=review.api_key, timeout=review.timeout_s)
    if not llm.is_available:
        return None
    return ReviewGate(llm, source=f"external:{review.provider}/{review.model}")


def build_classifier(config: PipeConfig, config_store: ConfigStore) -> IntentClassifier:
    llm = LLMClient(
        provider=config.classifier.provider,
        model=config.classifier.model,
        endpoint=config.classifier.endpoint,
        timeout=config.classifier.timeout_s,
    )
    return IntentClassifier(llm, config_store)


class IntentPipeline:
    """
    Single-process pipeline driver.

    Capture and classifier settings are read once at construction (they are
    restart-required); everything else is read from the config store at the
    point of use.
    """

    def __init__(
        self,
        config_store: ConfigStore,
        capture: Optional[ScreenpipeClient] = None,
        classifier: Optional[IntentClassifier] = None,
        dedup: Optional[DedupStore] = None,
        task_log: Optional[TaskLog] = None,
        notifier: Optional[Notifier] = None,
        reminders: Optional[RemindersSink] = None,
        notes: Optional[NotesSink] = None,
        background: Optional[BackgroundRunner] = None,
        review_factory=build_review_gate,
        batch_window_s: float = BATCH_WINDOW_S,
        clock=time.time,
    ):
        self.config_store = config_store
        config = config_store.get()
        self.capture_config = config.capture

        self.capture = capture or ScreenpipeClient(config.capture.screenpipe_url)
        self.classifier = classifier or build_classifier(config, config_store)
        self.detector = ChangeDetector()
        self.dedup = dedup or DedupStore(config_store)
        self.task_log = task_log or TaskLog()
        self.notifier = notifier or Notifier(config_store)
        self.reminders = reminders or RemindersSink(config_store)
        self.notes = notes or NotesSink(config_store)
        self.background = background or BackgroundRunner()

        self._review_factory = review_factory
        self._review_gate: Optional[ReviewGate] = None
        self._review_stale = True
        self._batch_window_s = batch_window_s
        self._clock = clock

        self.running = False
        self._polling = False
        self._stop_event: Optional[asyncio.Event] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._watcher_task: Optional[asyncio.Task] = None

        self._poll_seq = 0
        self._hotkey_seq = 0
        self._no_data_count = 0
        self._last_poll_end_ms = 0

        config_store.watch(self._on_config_change)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, watch_config: bool = True) -> None:
        """Start the config watcher and, unless in hotkey-only mode, the poll loop"""
        if self.running:
            logger.info("Pipeline already running")
            return
        self.running = True
        self._stop_event = asyncio.Event()

        removed = self.dedup.compact()
        if any(removed.values()):
            logger.info("Dedup compaction removed %s", removed)

        self._log_effective_config()

        if watch_config:
            self._watcher_task = asyncio.create_task(self.config_store.run_watcher(stop=self._stop_event))

        mode = self.capture_config.mode
        logger.info("Capture mode: %s", mode)
        if mode == "hotkey":
            logger.info("Hotkey-only mode, polling disabled; waiting for /trigger")
            return

        self._poll_task = asyncio.create_task(self.run_poll_loop())

    async def stop(self) -> None:
        """Set the stop flag and wait for in-flight work to finish"""
        if self._stop_event is not None:
            self._stop_event.set()
        for task in (self._poll_task, self._watcher_task):
            if task is not None:
                await task
        self._poll_task = self._watcher_task = None
        await self.background.drain()
        self.running = False
        logger.info("Pipeline stopped")

    @property
    def stop_requested(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    async def _sleep(self, seconds: float) -> None:
        if self._stop_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def status(self) -> Dict[str, Any]:
        event = self.config_store.last_event
        return {
            "running": self.running,
            "polling": self._polling,
            "mode": self.capture_config.mode,
            "effective_config": self.config_store.effective_snapshot(),
            "last_config_event": asdict(event) if event else None,
            "polls": self._poll_seq,
            "hotkey_triggers": self._hotkey_seq,
            "background": {
                "pending": self.background.pending,
                "recent_errors": list(self.background.recent_errors),
            },
        }

    def _log_effective_config(self) -> None:
        snapshot = self.config_store.effective_snapshot()
        logger.info(
            "Effective config: review.enabled=%s, review.provider=%s, review.model=%s, output_language=%s",
            snapshot["review_enabled"], snapshot["provider"] or "(unset)",
            snapshot["model"] or "(unset)", snapshot["output_language"],
        )

    def _on_config_change(self, event: ConfigChangeEvent) -> None:
        if event.type == "validation-error":
            return
        if any(path.startswith("review.") for path in event.changed_fields):
            self._review_stale = True
        if event.hot_reloaded:
            self._log_effective_config()

    def _get_review_gate(self) -> Optional[ReviewGate]:
        if self._review_stale:
            self._review_gate = self._review_factory(self.config_store.get().review)
            self._review_stale = False
        return self._review_gate

    # ------------------------------------------------------------------
    # Poll mode
    # ------------------------------------------------------------------

    async def run_poll_loop(self) -> None:
        """Poll until stopped. A second concurrent call returns immediately."""
        if self._polling:
            logger.info("Poll loop already running, skipping")
            return
        self._polling = True
        logger.info(
            "Polling every %.1fs, lookback %.1fs",
            self.capture_config.poll_interval_ms / 1000, self.capture_config.lookback_ms / 1000,
        )
        try:
            async for batch in aggregate_batches(self._poll_events(), window_s=self._batch_window_s):
                log = CycleLog("poll", self._poll_seq)
                log.info(f"◎ BATCH   {len(batch.texts)} texts from [{batch.app_label}]")
                try:
                    await self._process_batch(batch, log, trigger="poll")
                except Exception as e:
                    log.error("✗", str(e))
                    logger.exception("Poll batch failed")
                log.flush()
        finally:
            self._polling = False

    async def _poll_events(self) -> AsyncIterator[TextEvent]:
        interval_s = self.capture_config.poll_interval_ms / 1000
        while not self.stop_requested:
            try:
                event = await self.poll_tick()
            except Exception:
                logger.exception("Poll tick failed")
                event = None
            if event is not None:
                yield event
            await self._sleep(interval_s)

    async def poll_tick(self) -> Optional[TextEvent]:
        """One fetch + change detection pass. Returns the forwarded text, if any."""
        self._poll_seq += 1
        log = CycleLog("poll", self._poll_seq)
        config = self.config_store.get()

        now_ms = int(self._clock() * 1000)
        start_ms = poll_window(now_ms, self.capture_config.lookback_ms, self._last_poll_end_ms)
        self._last_poll_end_ms = now_ms

        try:
            samples = await self.capture.query("ocr", start_ms, now_ms, limit=DEFAULT_QUERY_LIMIT)
        except CaptureError as e:
            log.skip(f"capture error: {e}")
            return None

        if not samples:
            self._no_data_count += 1
            log.skip(f"no data (×{self._no_data_count})")
            return None
        self._no_data_count = 0

        data = SampleFilter(config.filter, self.capture_config.timestamp_skew_tolerance_ms).apply(
            samples, start_ms, now_ms
        )
        log.fetch(data.total_items, len(data.texts), data.apps, data.chars, {
            "app": data.skipped_app,
            "window": data.skipped_window,
            "short": data.skipped_short,
            "dedup": data.skipped_dedup,
            "time": data.skipped_time,
        })

        if not data.texts:
            log.info("① FETCH   all items filtered, skipped")
            log.flush()
            return None

        change = self.detector.detect("\n".join(data.texts))
        if not change.should_process:
            if change.reason == "below-threshold":
                log.no_change(change.ratio)
                log.flush()
            elif change.reason == "same":
                log.skip("no change")
            else:
                log.skip("empty text")
            return None

        log.change(change.ratio)
        log.flush()
        return TextEvent(text=change.text, apps=set(data.apps), timestamp_ms=now_ms)

    # ------------------------------------------------------------------
    # Hotkey mode
    # ------------------------------------------------------------------

    async def trigger_once(self) -> Dict[str, Any]:
        """One-shot capture + classification of the latest frames"""
        self._hotkey_seq += 1
        log = CycleLog("hotkey", self._hotkey_seq)
        config = self.config_store.get()
        now_ms = int(self._clock() * 1000)

        try:
            samples = await self.capture.query(
                "ocr", now_ms - HOTKEY_LOOKBACK_MS, now_ms, limit=HOTKEY_QUERY_LIMIT
            )
        except CaptureError as e:
            log.skip(f"capture error: {e}")
            return {"triggered": False}

        if not samples:
            log.skip("no data")
            return {"triggered": False}

        data = SampleFilter(config.filter).apply(samples)
        log.fetch(data.total_items, len(data.texts), data.apps, data.chars, {
            "app": data.skipped_app,
            "window": data.skipped_window,
            "short": data.skipped_short,
            "dedup": data.skipped_dedup,
        })
        if not data.texts:
            log.info("① FETCH   all items filtered, skipped")
            log.flush()
            return {"triggered": False}

        now = self._clock()
        batch = Batch(texts=data.texts, apps=set(data.apps), start_time=now, end_time=now)
        try:
            intent = await self._process_batch(batch, log, trigger="hotkey")
        except Exception as e:
            log.error("✗", str(e))
            log.flush()
            logger.exception("Hotkey trigger failed")
            return {"triggered": False}

        log.flush()
        result: Dict[str, Any] = {"triggered": True}
        if intent is not None:
            result["intent"] = intent.model_dump()
        return result

    # ------------------------------------------------------------------
    # Shared stages
    # ------------------------------------------------------------------

    async def _process_batch(self, batch: Batch, log: CycleLog, trigger: str) -> Optional[IntentResult]:
        try:
            intent = await self.classifier.classify(batch, hotkey_triggered=trigger == "hotkey")
        except ClassificationError as e:
            log.error("② INTENT", f"ClassificationError: {e}")
            return None

        if intent is None:
            log.intent_skip("text too short after cleaning, skipped")
            return None

        log.intent(intent, getattr(self.classifier, "last_latency_ms", None))
        if intent.is_empty:
            log.intent_skip("classified but empty" if not intent.content else "neither actionable nor noteworthy")
            return intent

        context = ReviewContext(
            source_app=batch.app_label,
            trigger=trigger,
            text_snippet=extract_snippet(batch.texts, intent.content),
            language=self.config_store.get().output_language,
        )
        await self.process_intent(intent, log, context)
        return intent

    async def process_intent(
        self,
        intent: IntentResult,
        log: CycleLog,
        context: Optional[ReviewContext] = None,
    ) -> Optional[IntentResult]:
        """
        Dual-path routing for a classified intent.

        actionable: dedup -> review -> task log + reminders + notify
        noteworthy: dedup -> review -> notes

        Returns:
            The delivered intent, or None when nothing was delivered
        """
        context = context or ReviewContext(language=self.config_store.get().output_language)
        if intent.is_empty:
            log.intent_skip("neither actionable nor noteworthy")
            return None

        actionable_dedup = self.dedup.check_actionable(intent) if intent.actionable else None
        noteworthy_dedup = self.dedup.check_noteworthy(intent) if intent.noteworthy else None
        if actionable_dedup is not None:
            log.dedup(ACTIONABLE, actionable_dedup)
        if noteworthy_dedup is not None:
            log.dedup(NOTEWORTHY, noteworthy_dedup)

        actionable_ok = bool(actionable_dedup and actionable_dedup.passed)
        noteworthy_ok = bool(noteworthy_dedup and noteworthy_dedup.passed)
        if not actionable_ok and not noteworthy_ok:
            return None

        candidate = intent.copy_with(
            actionable=actionable_ok,
            noteworthy=noteworthy_ok,
            due_time=intent.due_time if actionable_ok else None,
        )

        gate = self._get_review_gate()
        final = candidate
        if gate is None:
            log.review_skipped()
        else:
            try:
                reviewed = await gate.review(candidate, context)
            except ReviewError as e:
                fail_open = self.config_store.get().review.fail_open
                log.review_error(f"stage {e.stage} {e.reason}: {e}", fail_open)
                if not fail_open:
                    return None
            else:
                log.review(reviewed.outcome, gate.source)
                if reviewed.intent is None or reviewed.intent.is_empty:
                    return None
                final = reviewed.intent

        await self._deliver(final, log, context.source_app)
        return final

    async def _deliver(self, intent: IntentResult, log: CycleLog, source_app: str) -> NotifyResult:
        config = self.config_store.get()
        synced: List[str] = []
        result = NotifyResult()

        if intent.actionable:
            try:
                entry = self.task_log.record(intent)
            except OSError as e:
                entry = None
                result.errors.append(f"task log: {e}")
            if entry is not None and config.reminders.enabled:
                self.background.submit("reminders", self.reminders.sync_task(entry))
                synced.append("reminders")
            delivered = await self.notifier.notify(intent)
            result.desktop = delivered.desktop
            result.webhooks.extend(delivered.webhooks)
            result.errors.extend(delivered.errors)

        if intent.noteworthy and config.notes.enabled:
            self.background.submit("notes", self.notes.sync_memo(intent.content, source_app, datetime.now()))
            synced.append("notes")

        log.notify(result, synced)
        return result

    async def close(self) -> None:
        close = getattr(self.capture, "close", None)
        if close is not None:
            await close()
