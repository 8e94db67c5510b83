"""
Intent Classifier

Turns a batch of screen text into an IntentResult: clean the OCR text, ask the
local model for structured JSON, recover fields from malformed JSON, then run
the deterministic guard rules over the result.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Callable, List, Optional

from ..common.config import ConfigStore
from ..common.errors import ClassificationError, ProviderError
from ..common.llm_client import LLMClient
from ..common.llm_utils import coerce_bool, extract_fields, extract_json_object
from ..common.schemas import Batch, IntentResult
from .guards import GuardRules, apply_guards, clean_ocr_text

logger = logging.getLogger("livepipe.pipeline.classifier")

MIN_CLEANED_CHARS = 5

_OUTPUT_RULES = """Rules for "content":
- EXTRACT the original phrase(s) from the screen text; do NOT rewrite, translate or summarize
- Remove surrounding UI noise, code and unrelated text but keep the task phrase intact
- Keep the original language
- Maximum 200 characters
- Examples:
  * Screen: "Settings | Profile | Remind me to order lunch at 11AM | Logout"
    -> content: "Remind me to order lunch at 11AM"
  * Screen: "消息列表 记得明天下午交报告 已读"
    -> content: "记得明天下午交报告"

Rules for "due_time":
- Format "YYYY-MM-DDTHH:MM"; the current date/time is provided
- Convert relative expressions ("明天下午3点" -> next day 15:00, "at 11AM" -> today 11:00)
- If the resolved time is already past, move it to the next day
- null when no time is mentioned

Respond ONLY with JSON:
{"actionable": bool, "noteworthy": bool, "content": "extracted original text", "due_time": "YYYY-MM-DDTHH:MM" or null, "urgent": bool}"""

POLL_SYSTEM_PROMPT = """You are a screen text filter. Decide whether the text contains something the user must act on or should remember, and extract the relevant original text.

Two independent dimensions:
1. "actionable": a real task, reminder, meeting, deadline or request the user must act on
2. "noteworthy": a decision, conclusion, agreement or reference worth recording even if no action is needed

NOT actionable and NOT noteworthy (always false):
- Code, logs, error messages, stack traces
- UI labels, navigation, app chrome
- Ads, promotions, subscription prompts
- News or articles being read (not written by or for the user)
- Tasks that are already completed or cancelled

Actionable examples: "remind me...", "don't forget...", "记得...", "别忘了...", "need to...", meetings with a time.
Noteworthy examples: "we decided to...", "agreed on...", "结论是...", "最终确定...".

Be conservative: when in doubt, both false.

""" + _OUTPUT_RULES

HOTKEY_SYSTEM_PROMPT = """You are a screen text filter. The user explicitly pressed a hotkey to capture this screen, so they WANT you to find something. Be lenient.

Mark "actionable" true if there is ANY hint of a task, todo, reminder, appointment, deadline, a message needing a reply, or something to DO, BUY, SEND, CHECK or ATTEND.
Mark "noteworthy" true for decisions, conclusions, agreements or reference material the user may want to keep.
Only mark both false if the screen contains nothing useful.

""" + _OUTPUT_RULES


def build_messages(cleaned_text: str, apps: str, hotkey_triggered: bool, now: datetime) -> List[dict]:
    system = HOTKEY_SYSTEM_PROMPT if hotkey_triggered else POLL_SYSTEM_PROMPT
    user = (
        f"Current date/time: {now.strftime('%Y-%m-%d %H:%M (%A)')}\n\n"
        f"Screen text from [{apps}]:\n{cleaned_text}\n\nJSON:"
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]


def parse_intent(raw: str) -> IntentResult:
    """Parse model output into an (unguarded) IntentResult.

    Strict JSON first, then field-by-field recovery. Empty output is an
    all-false result.

    Raises:
        ClassificationError: nothing recognizable in the output
    """
    text = (raw or "").replace("```json", "").replace("```", "").strip()
    if not text:
        return IntentResult()

    parsed = extract_json_object(text)
    if parsed.ok:
        data = parsed.data
    else:
        data = extract_fields(
            text,
            bool_fields=("actionable", "noteworthy", "urgent"),
            string_fields=("content", "due_time"),
        )
        if "actionable" not in data and "noteworthy" not in data:
            raise ClassificationError(f"unparsable model output: {text[:200]}")
        logger.debug("Recovered fields from malformed JSON: %s", sorted(data))

    return IntentResult(
        actionable=coerce_bool(data.get("actionable")) or False,
        noteworthy=coerce_bool(data.get("noteworthy")) or False,
        content=data.get("content") or "",
        due_time=data.get("due_time"),
        urgent=coerce_bool(data.get("urgent")) or False,
    )


class IntentClassifier:
    """
    Local-model intent classifier.

    Guard pattern lists come from the live config and are recompiled only
    when the guards section is replaced.
    """

    def __init__(
        self,
        llm: LLMClient,
        config_store: Optional[ConfigStore] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._llm = llm
        self._config_store = config_store
        self._clock = clock
        self._guard_config = None
        self._rules = GuardRules()
        self.last_latency_ms: Optional[int] = None
        self.last_guards: List[str] = []

    def _current_rules(self) -> GuardRules:
        if self._config_store is None:
            return self._rules
        guard_config = self._config_store.get().guards
        if guard_config is not self._guard_config:
            self._rules = GuardRules.from_config(guard_config)
            self._guard_config = guard_config
        return self._rules

    async def classify(self, batch: Batch, hotkey_triggered: bool = False) -> Optional[IntentResult]:
        """
        Classify one batch.

        Returns:
            IntentResult, or None when the cleaned text is too short to classify

        Raises:
            ClassificationError: inference failed or output was unparsable
        """
        cleaned = clean_ocr_text(batch.texts)
        if len(cleaned) < MIN_CLEANED_CHARS:
            logger.info("Text too short after cleaning (%d chars), skipping", len(cleaned))
            return None

        now = self._clock()
        messages = build_messages(cleaned, batch.app_label, hotkey_triggered, now)
        logger.debug(
            "Analyzing %d chars from [%s]%s",
            len(cleaned), batch.app_label, " (hotkey)" if hotkey_triggered else "",
        )

        t0 = time.monotonic()
        try:
            raw = await asyncio.to_thread(self._llm.chat, messages, temperature=0.1, max_tokens=300)
        except ProviderError as e:
            raise ClassificationError(f"inference failed ({e.reason}): {e}") from e
        finally:
            self.last_latency_ms = int((time.monotonic() - t0) * 1000)

        logger.debug("Model response (%dms): %s", self.last_latency_ms, (raw or "")[:300])

        intent = parse_intent(raw)
        intent, fired = apply_guards(intent, self._current_rules(), now)
        self.last_guards = fired
        if fired:
            logger.debug("Guards applied: %s", ", ".join(fired))
        return intent
