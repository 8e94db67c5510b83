"""
Deterministic guard rules applied after model classification.

Small local models are inconsistent about promotional text, finished tasks
and what counts as worth remembering. These rules run over the extracted
fields and may only turn flags off, with urgency derived here rather than
taken from the model.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Pattern, Tuple

from ..common.config import GuardConfig
from ..common.schemas import IntentResult

READABLE_RE = re.compile(r"[\w\s\u4e00-\u9fff\u3000-\u303f.,;:!?]")
GARBLED_READABLE_RATIO = 0.5

CODE_PREFIX_RE = re.compile(
    r"^(import |export |const |let |var |function |class |if\s*\(|for\s*\(|return |await |async "
    r"|\{|\}|//|</|=>|\.then|\.catch|console\.|npm |bun |pip |curl )"
)
CODE_SYMBOL_RE = re.compile(r"[{}();=<>|&]")
CODE_SYMBOL_RATIO = 0.15

MIN_LINE_CHARS = 3
MAX_CLEANED_CHARS = 4000
URGENT_DUE_WINDOW = timedelta(hours=1)


DEFAULT_NOISE_PATTERNS = [
    r"\bbuy now\b",
    r"\bshop now\b",
    r"\bsubscribe( now| today)?\b",
    r"\bfree trial\b",
    r"\blimited[- ]time\b",
    r"\d+\s*% off\b",
    r"\bsale ends\b",
    r"\bclick here\b",
    r"\bsponsored\b",
    r"\bdownload (the|our) app\b",
    r"立即购买",
    r"立即抢购",
    r"限时",
    r"优惠券?",
    r"折扣",
    r"秒杀",
    r"广告",
    r"下载\s*APP",
]

DEFAULT_TASK_PATTERNS = [
    r"\bremember to\b",
    r"\bdon'?t forget\b",
    r"\bremind me\b",
    r"\bneed to\b",
    r"\bhave to\b",
    r"\bmust\b",
    r"\bplease\b",
    r"\bTODO\b",
    r"记得",
    r"别忘",
    r"提醒",
    r"请",
    r"需要",
    r"待办",
]

DEFAULT_NO_ACTION_PATTERNS = [
    r"\bno action (is )?(needed|required)\b",
    r"\bnothing to do\b",
    r"\balready (done|completed|finished|paid|submitted|sent)\b",
    r"\b(has|have) been (completed|cancelled|canceled)\b",
    r"^\s*(\w+\s+){0,3}(is\s+)?(cancelled|canceled)\s*[.!]?\s*$",
    r"无需",
    r"不需要(处理|操作)",
    r"已完成",
    r"已处理",
    r"已支付",
    r"已提交",
    r"^\s*\S{0,10}已取消\s*[。!！]?\s*$",
]

DEFAULT_NOTEWORTHY_PATTERNS = [
    r"\bdecid(ed|e|ion)\b",
    r"\bagreed?\b",
    r"\bconclu(ded|sion)\b",
    r"\bapproved\b",
    r"\bconfirmed\b",
    r"\bpolicy\b",
    r"\bfor (the )?record\b",
    r"\bfor reference\b",
    r"\bkey takeaway\b",
    r"\bnote that\b",
    r"决定",
    r"决议",
    r"结论",
    r"确认",
    r"约定",
    r"共识",
    r"定了",
    r"备忘",
    r"参考",
]

DEFAULT_URGENT_PATTERNS = [
    r"\burgent(ly)?\b",
    r"\basap\b",
    r"\bimmediately\b",
    r"\bright (now|away)\b",
    r"\bcritical\b",
    r"\bemergency\b",
    r"\bdue (today|tonight|now)\b",
    r"紧急",
    r"加急",
    r"马上",
    r"立刻",
    r"立即",
    r"尽快",
    r"火速",
]


def _compile(patterns: Iterable[str]) -> List[Pattern]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


def _matches(patterns: List[Pattern], text: str) -> bool:
    return any(p.search(text) for p in patterns)


@dataclass
class GuardRules:
    """Compiled pattern lists (built-in defaults plus configured extras)"""
    noise: List[Pattern] = field(default_factory=lambda: _compile(DEFAULT_NOISE_PATTERNS))
    task: List[Pattern] = field(default_factory=lambda: _compile(DEFAULT_TASK_PATTERNS))
    no_action: List[Pattern] = field(default_factory=lambda: _compile(DEFAULT_NO_ACTION_PATTERNS))
    noteworthy: List[Pattern] = field(default_factory=lambda: _compile(DEFAULT_NOTEWORTHY_PATTERNS))
    urgent: List[Pattern] = field(default_factory=lambda: _compile(DEFAULT_URGENT_PATTERNS))

    @classmethod
    def from_config(cls, config: Optional[GuardConfig]) -> "GuardRules":
        if config is None:
            return cls()
        return cls(
            noise=_compile(DEFAULT_NOISE_PATTERNS + config.noise_patterns),
            task=_compile(DEFAULT_TASK_PATTERNS + config.task_patterns),
            no_action=_compile(DEFAULT_NO_ACTION_PATTERNS + config.no_action_patterns),
            noteworthy=_compile(DEFAULT_NOTEWORTHY_PATTERNS + config.noteworthy_patterns),
            urgent=_compile(DEFAULT_URGENT_PATTERNS + config.urgent_patterns),
        )


# ============================================================================
# Input cleaning
# ============================================================================

def is_garbled(text: str) -> bool:
    """Less than half of the characters are readable"""
    if not text:
        return False
    readable = len(READABLE_RE.findall(text))
    return readable / len(text) < GARBLED_READABLE_RATIO


def is_code_line(line: str) -> bool:
    stripped = line.strip()
    symbol_ratio = len(CODE_SYMBOL_RE.findall(stripped)) / max(len(stripped), 1)
    return bool(CODE_PREFIX_RE.match(stripped)) or symbol_ratio > CODE_SYMBOL_RATIO


def clean_ocr_text(texts: List[str]) -> str:
    """Drop code/log-looking and very short lines; one output line per input text"""
    result = []
    for text in texts:
        kept = []
        for line in re.split(r"[\n\r]+", text):
            stripped = line.strip()
            if len(stripped) < MIN_LINE_CHARS:
                continue
            if is_code_line(stripped):
                continue
            kept.append(stripped)
        if kept:
            result.append(" ".join(kept))
    return "\n".join(result)[:MAX_CLEANED_CHARS]


# ============================================================================
# Guards
# ============================================================================

def _parse_due(due_time: Optional[str]) -> Optional[datetime]:
    if not due_time:
        return None
    try:
        return datetime.strptime(due_time, "%Y-%m-%dT%H:%M")
    except ValueError:
        return None


def is_due_soon(due_time: Optional[str], now: datetime) -> bool:
    due = _parse_due(due_time)
    if due is None:
        return False
    return timedelta(0) <= due - now <= URGENT_DUE_WINDOW


def apply_guards(
    intent: IntentResult,
    rules: GuardRules,
    now: Optional[datetime] = None,
) -> Tuple[IntentResult, List[str]]:
    """Apply guard rules in order. Returns the guarded intent and the guards that fired."""
    now = now or datetime.now()
    fired: List[str] = []

    actionable = intent.actionable
    noteworthy = intent.noteworthy
    content = intent.content
    due_time = intent.due_time

    if not content:
        return IntentResult(), fired

    if is_garbled(content):
        fired.append("garbled")
        return IntentResult(), fired

    if (actionable or noteworthy) and _matches(rules.noise, content) and not _matches(rules.task, content):
        fired.append("noise")
        actionable = noteworthy = False

    if actionable and _matches(rules.no_action, content):
        fired.append("no-action")
        actionable = False
        due_time = None

    if noteworthy and not _matches(rules.noteworthy, content):
        fired.append("noteworthy-gate")
        noteworthy = False

    urgent = False
    if actionable or noteworthy:
        urgent = _matches(rules.urgent, content) or (actionable and is_due_soon(due_time, now))
    if urgent != intent.urgent:
        fired.append("urgency")

    if not actionable:
        due_time = None

    return IntentResult(
        actionable=actionable,
        noteworthy=noteworthy,
        content=content,
        due_time=due_time,
        urgent=urgent,
    ), fired
