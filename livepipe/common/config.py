"""
Configuration Management for LivePipe

Loads pipe.json, validates it against a fully-defaulted schema and watches it
for edits. The live config is only ever replaced wholesale by a value that
passed validation; a bad edit leaves the previous config in place and is
reported as a validation-error event.

Priority (highest to lowest):
1. Environment variables (API keys, output language, local model URL)
2. pipe.json
3. Schema defaults
"""

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional, Set

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigValidationError

load_dotenv()

logger = logging.getLogger("livepipe.common.config")

# Default paths
DATA_DIR = Path(os.getenv("LIVEPIPE_HOME") or (Path.home() / ".livepipe"))
CONFIG_PATH = Path(os.getenv("LIVEPIPE_CONFIG") or (DATA_DIR / "pipe.json"))
LOGS_DIR = DATA_DIR / "logs"
TASKS_PATH = DATA_DIR / "tasks.md"
TASKS_RAW_PATH = DATA_DIR / "tasks-raw.md"
MEMOS_RAW_PATH = DATA_DIR / "memos-raw.md"
AUDIT_LOG_PATH = LOGS_DIR / "screenpipe-raw.jsonl"

DEFAULT_BLOCKED_WINDOWS = ["livepipe", "opencode", "screenpipe"]
DEFAULT_OUTPUT_LANGUAGE = "zh-CN"


class _Section(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, strict=True, str_strip_whitespace=True)


class FilterConfig(_Section):
    """Which samples enter the pipeline"""
    allowed_apps: List[str] = Field(default_factory=list)  # empty = allow all
    blocked_windows: List[str] = Field(default_factory=lambda: list(DEFAULT_BLOCKED_WINDOWS))
    min_text_length: int = Field(default=20, ge=1)


class CaptureConfig(_Section):
    """Capture cadence and trigger mode (restart required)"""
    mode: Literal["always", "hotkey", "both"] = "always"
    hotkey_hold_ms: int = Field(default=500, ge=1)
    poll_interval_ms: int = Field(default=5000, ge=1000)
    lookback_ms: int = Field(default=60000, ge=1000)
    timestamp_skew_tolerance_ms: int = Field(default=2000, ge=0)
    screenpipe_url: str = Field(default="http://localhost:3030", min_length=1)


class ClassifierConfig(_Section):
    """Local inference backend (restart required)"""
    provider: str = Field(default="ollama", min_length=1)
    model: str = Field(default="qwen2.5:3b", min_length=1)
    endpoint: str = "http://localhost:11434"
    timeout_s: float = Field(default=60.0, gt=0)


class ReviewConfig(_Section):
    """Optional cloud review gate"""
    enabled: bool = False
    provider: str = ""
    model: str = ""
    api_key: str = Field(default="", repr=False)
    fail_open: bool = True
    timeout_s: float = Field(default=30.0, gt=0)


class WebhookConfig(_Section):
    """A single webhook channel"""
    url: str = Field(min_length=1)
    enabled: bool = True
    provider: Literal["generic", "feishu", "telegram"] = "generic"
    headers: Dict[str, str] = Field(default_factory=dict)
    chat_id: Optional[str] = None


class NotificationConfig(_Section):
    desktop: bool = True
    webhooks: List[WebhookConfig] = Field(default_factory=list)


class RemindersConfig(_Section):
    enabled: bool = False
    list: str = Field(default="LivePipe", min_length=1)


class NotesConfig(_Section):
    enabled: bool = False
    folder: str = Field(default="LivePipe", min_length=1)


class DedupConfig(_Section):
    actionable_threshold: float = Field(default=0.6, ge=0, le=1)
    noteworthy_threshold: float = Field(default=0.8, ge=0, le=1)
    lookback_days: int = Field(default=7, ge=1)


class GuardConfig(_Section):
    """Extra regex patterns merged with the built-in guard rule lists"""
    noise_patterns: List[str] = Field(default_factory=list)
    task_patterns: List[str] = Field(default_factory=list)
    no_action_patterns: List[str] = Field(default_factory=list)
    noteworthy_patterns: List[str] = Field(default_factory=list)
    urgent_patterns: List[str] = Field(default_factory=list)

    @field_validator(
        "noise_patterns", "task_patterns", "no_action_patterns",
        "noteworthy_patterns", "urgent_patterns",
    )
    @classmethod
    def _must_compile(cls, patterns: List[str]) -> List[str]:
        for pattern in patterns:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"invalid regular expression {pattern!r}: {e}")
        return patterns


class PipeConfig(_Section):
    """Main LivePipe configuration"""
    filter: FilterConfig = Field(default_factory=FilterConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    review: ReviewConfig = Field(default_factory=ReviewConfig)
    output_language: str = Field(default=DEFAULT_OUTPUT_LANGUAGE, min_length=1)
    notification: NotificationConfig = Field(default_factory=NotificationConfig)
    reminders: RemindersConfig = Field(default_factory=RemindersConfig)
    notes: NotesConfig = Field(default_factory=NotesConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    guards: GuardConfig = Field(default_factory=GuardConfig)


# =============================================================================
# Field classification
# =============================================================================

HOT_RELOAD_SECTIONS = (
    "filter", "review", "output_language", "notification",
    "reminders", "notes", "dedup", "guards",
)
RESTART_REQUIRED_SECTIONS = ("capture", "classifier")


def _tracked_fields() -> List[str]:
    paths = []
    for name, info in PipeConfig.model_fields.items():
        annotation = info.annotation
        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            paths.extend(f"{name}.{sub}" for sub in annotation.model_fields)
        else:
            paths.append(name)
    return paths


TRACKED_FIELDS = _tracked_fields()
HOT_RELOAD_FIELDS = frozenset(p for p in TRACKED_FIELDS if p.split(".")[0] in HOT_RELOAD_SECTIONS)
RESTART_REQUIRED_FIELDS = frozenset(p for p in TRACKED_FIELDS if p.split(".")[0] in RESTART_REQUIRED_SECTIONS)


def _comparable_fields(config: PipeConfig) -> Dict[str, str]:
    """Canonical JSON per tracked field"""
    data = config.model_dump(mode="json")
    result = {}
    for path in TRACKED_FIELDS:
        value: Any = data
        for part in path.split("."):
            value = value[part]
        result[path] = json.dumps(value, sort_keys=True, ensure_ascii=False)
    return result


def changed_fields(previous: PipeConfig, current: PipeConfig) -> List[str]:
    """Tracked field paths whose canonical JSON differs"""
    before = _comparable_fields(previous)
    after = _comparable_fields(current)
    return [path for path in TRACKED_FIELDS if before[path] != after[path]]


# =============================================================================
# Change events
# =============================================================================

@dataclass
class ConfigChangeEvent:
    """Emitted by ConfigStore when pipe.json changes"""
    type: str  # "hot-reloaded" | "restart-required" | "validation-error"
    at: str
    message: str
    changed_fields: List[str] = field(default_factory=list)
    hot_reloaded: List[str] = field(default_factory=list)
    restart_required: List[str] = field(default_factory=list)
    issues: List[str] = field(default_factory=list)


def build_change_event(changed: List[str], issues: Optional[List[str]] = None) -> ConfigChangeEvent:
    now = datetime.now(timezone.utc).isoformat()

    if issues:
        return ConfigChangeEvent(
            type="validation-error",
            at=now,
            message=f"config validation failed: {issues[0]}",
            changed_fields=list(changed),
            issues=list(issues),
        )

    hot = [p for p in changed if p in HOT_RELOAD_FIELDS]
    restart = [p for p in changed if p in RESTART_REQUIRED_FIELDS]

    parts = []
    if hot:
        parts.append(f"hot-reloaded: {', '.join(hot)}")
    if restart:
        parts.append(f"restart required: {', '.join(restart)}")

    return ConfigChangeEvent(
        type="restart-required" if restart else "hot-reloaded",
        at=now,
        message=" | ".join(parts),
        changed_fields=list(changed),
        hot_reloaded=hot,
        restart_required=restart,
    )


# =============================================================================
# Parsing
# =============================================================================

def _format_issues(error: ValidationError) -> List[str]:
    issues = []
    for err in error.errors():
        path = ".".join(str(p) for p in err["loc"]) or "(root)"
        issues.append(f"{path}: {err['msg']}")
    return issues


def _conditional_issues(data: Dict[str, Any]) -> List[str]:
    """Cross-field requirements the per-field schema cannot express"""
    issues = []

    review = data.get("review")
    if isinstance(review, dict) and review.get("enabled") is True:
        for key in ("provider", "model", "api_key"):
            value = review.get(key, "")
            if isinstance(value, str) and not value.strip():
                issues.append(f"review.{key}: is required when review.enabled is true")

    notification = data.get("notification")
    webhooks = notification.get("webhooks") if isinstance(notification, dict) else None
    if isinstance(webhooks, list):
        for i, hook in enumerate(webhooks):
            if not isinstance(hook, dict) or hook.get("provider") != "telegram":
                continue
            chat_id = hook.get("chat_id")
            if not isinstance(chat_id, str) or not chat_id.strip():
                issues.append(
                    f'notification.webhooks.{i}.chat_id: is required when provider is "telegram"'
                )

    return issues


def parse_config_data(data: Any) -> PipeConfig:
    """Validate an already-decoded document. Raises ConfigValidationError."""
    issues: List[str] = []
    config = None
    try:
        # strict types are judged against the JSON form
        config = PipeConfig.model_validate_json(json.dumps(data))
    except ValidationError as e:
        issues.extend(_format_issues(e))

    if isinstance(data, dict):
        issues.extend(_conditional_issues(data))

    if issues or config is None:
        raise ConfigValidationError(issues)
    return config


def parse_config_text(text: str) -> PipeConfig:
    """Parse pipe.json contents. Raises ConfigValidationError."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigValidationError([f"(root): invalid JSON: {e}"])
    return parse_config_data(data)


def _apply_env_overrides(data: Any) -> Set[str]:
    """Overlay environment values onto the raw document. Returns overridden paths."""
    if not isinstance(data, dict):
        return set()

    sourced: Set[str] = set()

    review = data.setdefault("review", {})
    if isinstance(review, dict):
        provider = str(review.get("provider", "")).lower()
        _provider_key_env = {
            "gemini": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
            "google": ("GOOGLE_API_KEY", "GEMINI_API_KEY"),
            "anthropic": ("ANTHROPIC_API_KEY",),
            "openai": ("OPENAI_API_KEY",),
        }
        if os.getenv("LIVEPIPE_REVIEW_API_KEY"):
            review["api_key"] = os.getenv("LIVEPIPE_REVIEW_API_KEY")
            sourced.add("review.api_key")
        elif not review.get("api_key"):
            for env_var in _provider_key_env.get(provider, ()):
                if os.getenv(env_var):
                    review["api_key"] = os.getenv(env_var)
                    sourced.add("review.api_key")
                    break

    if os.getenv("LIVEPIPE_OUTPUT_LANGUAGE"):
        data["output_language"] = os.getenv("LIVEPIPE_OUTPUT_LANGUAGE")
        sourced.add("output_language")

    classifier = data.setdefault("classifier", {})
    if isinstance(classifier, dict) and os.getenv("LIVEPIPE_OLLAMA_URL"):
        classifier["endpoint"] = os.getenv("LIVEPIPE_OLLAMA_URL")
        sourced.add("classifier.endpoint")

    return sourced


def save_config(config: PipeConfig, path: Optional[Path] = None, env_sourced: Set[str] = frozenset()) -> None:
    """Write config to disk.

    Secrets that came from environment variables are written as empty strings
    so they are never persisted.
    """
    path = Path(path) if path else CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump(mode="json")
    if "review.api_key" in env_sourced:
        data["review"]["api_key"] = ""

    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)

    # Set secure permissions
    path.chmod(0o600)


def ensure_config_file(path: Optional[Path] = None) -> Path:
    """Create pipe.json with defaults if it does not exist"""
    path = Path(path) if path else CONFIG_PATH
    if not path.exists():
        save_config(PipeConfig(), path)
        logger.info("Wrote default config to %s", path)
    return path


def ensure_directories() -> None:
    """Ensure required directories exist"""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


# =============================================================================
# Store
# =============================================================================

class ConfigStore:
    """
    Owns the live PipeConfig.

    Readers call get() and always receive a complete, validated snapshot;
    updates swap the whole object. watch() callbacks run on every detected
    change, including validation failures.
    """

    def __init__(self, path: Optional[Path] = None):
        self._path = Path(path) if path else CONFIG_PATH
        self._current: Optional[PipeConfig] = None
        self._callbacks: List[Callable[[ConfigChangeEvent], None]] = []
        self._last_mtime: Optional[float] = None
        self._last_event: Optional[ConfigChangeEvent] = None
        self._env_sourced: Set[str] = set()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def last_event(self) -> Optional[ConfigChangeEvent]:
        return self._last_event

    @property
    def env_sourced(self) -> Set[str]:
        return set(self._env_sourced)

    def load(self) -> PipeConfig:
        """Read and validate the file, replacing the live config.

        Raises:
            ConfigValidationError: file missing, unreadable, malformed or invalid
        """
        self._last_mtime = self._mtime()
        config = self._read()
        self._current = config
        return config

    def get(self) -> PipeConfig:
        """Last valid config (loads on first use)"""
        if self._current is None:
            return self.load()
        return self._current

    def watch(self, callback: Callable[[ConfigChangeEvent], None]) -> None:
        self._callbacks.append(callback)

    def poll(self) -> Optional[ConfigChangeEvent]:
        """Check the file once; reload and emit an event if it changed"""
        mtime = self._mtime()
        if mtime == self._last_mtime:
            return None
        self._last_mtime = mtime

        previous = self._current
        try:
            nxt = self._read()
        except ConfigValidationError as e:
            event = build_change_event([], e.issues)
            self._emit(event)
            return event

        self._current = nxt
        if previous is None:
            return None

        changed = changed_fields(previous, nxt)
        if not changed:
            return None

        event = build_change_event(changed)
        self._emit(event)
        return event

    async def run_watcher(self, interval_s: float = 1.2, stop: Optional[asyncio.Event] = None) -> None:
        """Poll the file until stop is set"""
        while stop is None or not stop.is_set():
            self.poll()
            await asyncio.sleep(interval_s)

    def effective_snapshot(self) -> Dict[str, Any]:
        config = self.get()
        return {
            "review_enabled": config.review.enabled,
            "provider": config.review.provider,
            "model": config.review.model,
            "output_language": config.output_language,
        }

    def _mtime(self) -> Optional[float]:
        try:
            return self._path.stat().st_mtime
        except OSError:
            return None

    def _read(self) -> PipeConfig:
        if not self._path.exists():
            raise ConfigValidationError([f"(root): file not found at {self._path}"])
        try:
            text = self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigValidationError([f"(root): failed to read file: {e}"])

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigValidationError([f"(root): invalid JSON: {e}"])

        sourced = _apply_env_overrides(data)
        config = parse_config_data(data)
        self._env_sourced = sourced
        return config

    def _emit(self, event: ConfigChangeEvent) -> None:
        self._last_event = event
        if event.type == "validation-error":
            logger.error("%s", event.message)
            for issue in event.issues:
                logger.error("  - %s", issue)
        elif event.type == "restart-required":
            logger.warning("%s", event.message)
        else:
            logger.info("%s", event.message)

        for callback in self._callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception("Config change callback failed")
