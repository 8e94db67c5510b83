"""
Review Gate

Optional two-stage cloud review of a classified intent.

Stage 1 validates the local decision and may only downgrade flags. Stage 2
checks the content against the captured excerpt, polishes it into the output
language and resolves due_time to an absolute future minute. Provider
failures surface as ReviewError; whether to fail open is the caller's call.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from ..common.errors import ProviderError, ReviewError
from ..common.llm_client import LLMClient
from ..common.llm_utils import coerce_bool, extract_json_object
from ..common.schemas import (
    CONTENT_MAX_CHARS,
    IntentResult,
    ReviewOutcome,
    ReviewResult,
    ReviewStage,
    normalize_due_time,
)

logger = logging.getLogger("livepipe.pipeline.review_gate")

VALIDATION_PROMPT = """You are a task review expert. A small on-device model read screen OCR text and flagged an item. Verify whether each flag is correct.

Flags:
- "actionable": the user must take a real-world action (task, reminder, meeting, deadline, request)
- "noteworthy": a decision, conclusion, agreement or reference worth recording
- "urgent": needs attention within the hour or is explicitly marked urgent

You will receive the flags, the extracted content and due_time, the source app, the trigger ("poll" = automatic background capture, "hotkey" = the user explicitly asked, be more lenient) and a short OCR snippet.

Common false positives:
- UI labels, buttons, menu items
- News headlines or article text being read
- Code comments or TODO markers in source code
- Ads, promotions, recommended content
- Content that does not appear in the OCR snippet at all
- Truncated fragments whose action target is gibberish (e.g. "Investigate Oj&")

You may only confirm or clear a flag; a flag that arrives false stays false.

Respond ONLY with JSON:
{"approved": true/false, "actionable": bool, "noteworthy": bool, "urgent": bool, "reason": "brief explanation"}"""


def build_refinement_prompt(language: str) -> str:
    return f"""You are a to-do quality reviewer. You receive an item extracted by a small model from screen OCR, with context. Produce the final, polished output in {language}.

Your tasks:
1. Verify the content matches the OCR snippet (reject hallucinations)
2. Translate to {language} if needed; keep unknown proper nouns as-is
3. Fix grammar, remove redundancy, write one clean self-explanatory sentence (max 200 characters)
4. Verify due_time:
   - Extract a time present in the OCR that the small model missed, or fix a wrong one
   - Convert relative times ("明天", "tomorrow", "Friday") to absolute "YYYY-MM-DDTHH:MM" using the current time
   - due_time must be AFTER the current time; push a past time to its next occurrence
   - null when no time is mentioned
5. Re-assess "actionable", "noteworthy" and "urgent"

Reject if the content is garbled, a hallucination, too vague to be useful, or a truncated fragment.

Respond ONLY with JSON:
{{"approved": true/false, "refined_content": "sentence in {language}", "refined_due_time": "YYYY-MM-DDTHH:MM" or null, "actionable": bool, "noteworthy": bool, "urgent": bool, "reason": "brief explanation"}}"""


@dataclass
class ReviewContext:
    """Lightweight context sent alongside the intent"""
    source_app: str = "unknown"
    trigger: str = "poll"  # "poll" | "hotkey"
    text_snippet: str = ""
    language: str = "zh-CN"


def roll_forward(due_time: Optional[str], now: datetime) -> Optional[str]:
    """Move a resolved-to-past minute forward by whole days until it is after now"""
    if not due_time:
        return None
    try:
        due = datetime.strptime(due_time, "%Y-%m-%dT%H:%M")
    except ValueError:
        return None
    if due <= now:
        due += timedelta(days=(now - due).days + 1)
    return due.strftime("%Y-%m-%dT%H:%M")


def _and_flag(data: dict, name: str, current: bool) -> bool:
    """Logical AND of the local flag and the reviewer's; missing reviewer value keeps local"""
    value = coerce_bool(data.get(name))
    if value is None:
        return current
    return current and value


class ReviewGate:
    """
    Two-stage cloud reviewer.

    The client is constructed by the caller from the live review settings;
    ReviewGate itself holds no configuration.
    """

    def __init__(self, llm: LLMClient, clock: Callable[[], datetime] = datetime.now, source: str = ""):
        self._llm = llm
        self._clock = clock
        self.source = source or f"external:{llm.provider}/{llm.model}"

    @property
    def is_available(self) -> bool:
        return self._llm.is_available

    async def _call(self, stage: int, messages: List[dict], max_tokens: int) -> str:
        try:
            return await asyncio.to_thread(
                self._llm.chat, messages, temperature=0.1, max_tokens=max_tokens, json_mode=True
            )
        except ProviderError as e:
            raise ReviewError(stage, e.reason, snippet=e.response_text, message=str(e)) from e

    async def review(self, intent: IntentResult, context: Optional[ReviewContext] = None) -> ReviewResult:
        """
        Run both stages.

        Returns:
            ReviewResult whose intent is None when the item was rejected

        Raises:
            ReviewError: provider failure in either stage
        """
        context = context or ReviewContext()
        outcome = ReviewOutcome()

        # Stage 1: validation
        t0 = time.monotonic()
        raw1 = await self._call(1, self._stage1_messages(intent, context), max_tokens=200)
        latency1 = int((time.monotonic() - t0) * 1000)

        parsed1 = extract_json_object(raw1)
        stage1 = intent
        if parsed1.malformed:
            outcome.stages.append(ReviewStage(1, latency1, "unparsable, kept local decision"))
        elif coerce_bool(parsed1.data.get("approved")) is False:
            reason = str(parsed1.data.get("reason") or "not approved")
            outcome.stages.append(ReviewStage(1, latency1, f"rejected: {reason}"))
            outcome.rejected = True
            logger.info("Review stage 1 rejected %r: %s", intent.content[:60], reason)
            return ReviewResult(intent=None, outcome=outcome)
        else:
            data = parsed1.data
            actionable = _and_flag(data, "actionable", intent.actionable)
            noteworthy = _and_flag(data, "noteworthy", intent.noteworthy)
            urgent = _and_flag(data, "urgent", intent.urgent)
            stage1 = intent.copy_with(
                actionable=actionable,
                noteworthy=noteworthy,
                urgent=urgent and (actionable or noteworthy),
                due_time=intent.due_time if actionable else None,
            )
            dropped = [
                name for name in ("actionable", "noteworthy", "urgent")
                if getattr(intent, name) and not getattr(stage1, name)
            ]
            label = f"downgraded: {', '.join(dropped)}" if dropped else "passed"
            outcome.stages.append(ReviewStage(1, latency1, label))

        if stage1.is_empty:
            outcome.rejected = True
            return ReviewResult(intent=None, outcome=outcome)

        # Stage 2: refinement
        now = self._clock()
        t0 = time.monotonic()
        raw2 = await self._call(2, self._stage2_messages(stage1, context, now), max_tokens=300)
        latency2 = int((time.monotonic() - t0) * 1000)

        parsed2 = extract_json_object(raw2)
        if parsed2.malformed:
            outcome.stages.append(ReviewStage(2, latency2, "unparsable, kept stage-1 result"))
            return ReviewResult(intent=stage1, outcome=outcome)

        data = parsed2.data
        if coerce_bool(data.get("approved")) is False:
            reason = str(data.get("reason") or "not approved")
            outcome.stages.append(ReviewStage(2, latency2, f"rejected: {reason}"))
            outcome.rejected = True
            logger.info("Review stage 2 rejected %r: %s", stage1.content[:60], reason)
            return ReviewResult(intent=None, outcome=outcome)

        refined = self._apply_refinement(stage1, data, now)
        if refined.is_empty:
            outcome.stages.append(ReviewStage(2, latency2, "rejected: no dimension left"))
            outcome.rejected = True
            return ReviewResult(intent=None, outcome=outcome)

        changed = []
        if refined.content != stage1.content:
            changed.append("content")
        if refined.due_time != stage1.due_time:
            changed.append(f"due:{stage1.due_time}->{refined.due_time}")
        for name in ("actionable", "noteworthy", "urgent"):
            if getattr(refined, name) != getattr(stage1, name):
                changed.append(name)

        outcome.stages.append(
            ReviewStage(2, latency2, f"refined [{', '.join(changed)}]" if changed else "no changes")
        )
        outcome.final_content = refined.content
        outcome.final_due_time = refined.due_time
        return ReviewResult(intent=refined, outcome=outcome)

    def _apply_refinement(self, stage1: IntentResult, data: dict, now: datetime) -> IntentResult:
        content = data.get("refined_content")
        if isinstance(content, str) and content.strip():
            content = content.strip()[:CONTENT_MAX_CHARS]
        else:
            content = stage1.content

        due_time = stage1.due_time
        if "refined_due_time" in data:
            raw_due = data.get("refined_due_time")
            if raw_due is None or raw_due == "null":
                due_time = None
            else:
                due_time = normalize_due_time(raw_due) or stage1.due_time
        due_time = roll_forward(due_time, now)

        actionable = _and_flag(data, "actionable", stage1.actionable)
        noteworthy = _and_flag(data, "noteworthy", stage1.noteworthy)
        urgent = _and_flag(data, "urgent", stage1.urgent) and (actionable or noteworthy)

        return IntentResult(
            actionable=actionable,
            noteworthy=noteworthy,
            content=content,
            due_time=due_time if actionable else None,
            urgent=urgent,
        )

    def _stage1_messages(self, intent: IntentResult, context: ReviewContext) -> List[dict]:
        user = (
            f"actionable: {str(intent.actionable).lower()}\n"
            f"noteworthy: {str(intent.noteworthy).lower()}\n"
            f"urgent: {str(intent.urgent).lower()}\n"
            f"Content: {intent.content}\n"
            f"Due time: {intent.due_time or 'none'}\n"
            f"Source app: {context.source_app}\n"
            f"Trigger: {context.trigger}"
        )
        if context.text_snippet:
            user += f"\nOCR snippet: {context.text_snippet}"
        return [
            {"role": "system", "content": VALIDATION_PROMPT},
            {"role": "user", "content": user},
        ]

    def _stage2_messages(self, intent: IntentResult, context: ReviewContext, now: datetime) -> List[dict]:
        user = (
            f"Content: {intent.content}\n"
            f"actionable: {str(intent.actionable).lower()}\n"
            f"noteworthy: {str(intent.noteworthy).lower()}\n"
            f"urgent: {str(intent.urgent).lower()}\n"
            f"Extracted due_time: {intent.due_time or 'null'}\n"
            f"Current time: {now.strftime('%Y-%m-%dT%H:%M')}"
        )
        if context.text_snippet:
            user += f"\nOCR snippet: {context.text_snippet}"
        return [
            {"role": "system", "content": build_refinement_prompt(context.language)},
            {"role": "user", "content": user},
        ]
