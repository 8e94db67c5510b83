"""
Dedup Store

Two independent near-duplicate gates, one per intent dimension. Each track is
an in-memory cache mirrored to an append-only line log; a passing check
records the content in the same call, so two candidates can never both be
"first".
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..common.config import MEMOS_RAW_PATH, TASKS_RAW_PATH, ConfigStore, DedupConfig
from ..common.schemas import DedupEntry, DedupResult, IntentResult

logger = logging.getLogger("livepipe.pipeline.dedup")

ACTIONABLE = "actionable"
NOTEWORTHY = "noteworthy"
TRACKS = (ACTIONABLE, NOTEWORTHY)

LENGTH_DIFF_CUTOFF = 0.5
NEAR_MISS_LOG_THRESHOLD = 0.3

_LEGACY_LINE_RE = re.compile(r"^(.+?)\s*\|\s*type:\w+\s*\|\s*detected:(\S+)$")
_LINE_RE = re.compile(r"^(.+?)\s*\|\s*detected:(\S+)$")


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", text.lower()).strip()


def _bigrams(text: str) -> set:
    return {text[i:i + 2] for i in range(len(text) - 1)}


def similarity(a: str, b: str) -> float:
    """Character-bigram Dice coefficient over the sets of bigrams.

    Strings whose lengths differ by more than half of the longer one score 0
    without computing bigrams.
    """
    la, lb = len(a), len(b)
    if la == 0 and lb == 0:
        return 1.0
    if la == 0 or lb == 0:
        return 0.0
    if abs(la - lb) / max(la, lb) > LENGTH_DIFF_CUTOFF:
        return 0.0

    na, nb = _normalize(a), _normalize(b)
    if na == nb:
        return 1.0

    bigrams_a, bigrams_b = _bigrams(na), _bigrams(nb)
    total = len(bigrams_a) + len(bigrams_b)
    if total == 0:
        return 0.0
    return 2 * len(bigrams_a & bigrams_b) / total


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_line(line: str) -> Optional[DedupEntry]:
    """Parse `content | detected:ISO` (or legacy `content | type:x | detected:ISO`)"""
    line = line.strip()
    m = _LEGACY_LINE_RE.match(line) or _LINE_RE.match(line)
    if not m:
        return None
    return DedupEntry(content=m.group(1).strip(), detected_at=m.group(2))


def format_line(entry: DedupEntry) -> str:
    return f"{entry.content} | detected:{entry.detected_at}"


class DedupTrack:
    """One dimension's cache and backing log. Loaded lazily on first use."""

    def __init__(self, name: str, path: Path):
        self.name = name
        self.path = Path(path)
        self._entries: List[DedupEntry] = []
        self._loaded = False

    @property
    def entries(self) -> List[DedupEntry]:
        self._ensure_loaded()
        return self._entries

    def load(self) -> None:
        self._entries = []
        self._loaded = True
        if not self.path.exists():
            return
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                entry = parse_line(line)
                if entry:
                    self._entries.append(entry)
        logger.debug("Loaded %d %s dedup entries", len(self._entries), self.name)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def append(self, entry: DedupEntry) -> None:
        """Append to the cache first, then the log file"""
        self._ensure_loaded()
        self._entries.append(entry)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            prefix = ""
            if self.path.exists() and self.path.stat().st_size > 0:
                with open(self.path, "rb") as f:
                    f.seek(-1, 2)
                    if f.read(1) != b"\n":
                        prefix = "\n"
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(prefix + format_line(entry) + "\n")
        except OSError as e:
            logger.warning("Failed to append to %s: %s", self.path, e)

    def rewrite(self, entries: List[DedupEntry]) -> None:
        self._entries = list(entries)
        self._loaded = True
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            for entry in self._entries:
                f.write(format_line(entry) + "\n")


class DedupStore:
    """
    Two-track persistent near-duplicate filter.

    Thresholds and the lookback window are read from the live config at
    check time, so dedup settings hot-reload.
    """

    def __init__(
        self,
        config_store: Optional[ConfigStore] = None,
        actionable_path: Optional[Path] = None,
        noteworthy_path: Optional[Path] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._config_store = config_store
        self._clock = clock
        self._tracks: Dict[str, DedupTrack] = {
            ACTIONABLE: DedupTrack(ACTIONABLE, actionable_path or TASKS_RAW_PATH),
            NOTEWORTHY: DedupTrack(NOTEWORTHY, noteworthy_path or MEMOS_RAW_PATH),
        }

    def _settings(self) -> DedupConfig:
        if self._config_store is None:
            return DedupConfig()
        return self._config_store.get().dedup

    def threshold(self, track: str) -> float:
        settings = self._settings()
        return settings.actionable_threshold if track == ACTIONABLE else settings.noteworthy_threshold

    def track(self, name: str) -> DedupTrack:
        if name not in self._tracks:
            raise ValueError(f"Unknown dedup track: {name}")
        return self._tracks[name]

    def cache_size(self, name: str) -> int:
        return len(self.track(name).entries)

    def check(self, track: str, content: str) -> DedupResult:
        """
        Compare content against entries inside the lookback window.

        A passing check appends the content to the track before returning.
        """
        store = self.track(track)
        settings = self._settings()
        threshold = self.threshold(track)
        now = self._clock()
        cutoff = now - timedelta(days=settings.lookback_days)
        content = " ".join(content.splitlines()).strip()

        logger.debug(
            "Checking %r against %d %s entries (cutoff=%s)",
            content[:60], len(store.entries), track, cutoff.date().isoformat(),
        )

        for entry in store.entries:
            detected = parse_timestamp(entry.detected_at)
            if detected is None or detected < cutoff:
                continue

            sim = similarity(content, entry.content)
            if sim >= threshold:
                logger.debug("Match: %.0f%% with %r", sim * 100, entry.content[:60])
                return DedupResult(
                    passed=False,
                    reason=f"{sim * 100:.0f}% match",
                    similarity=sim,
                    matched=entry.content,
                    cache_size=len(store.entries),
                    threshold=threshold,
                )
            if sim > NEAR_MISS_LOG_THRESHOLD:
                logger.debug("Near-miss: %.0f%% with %r", sim * 100, entry.content[:60])

        store.append(DedupEntry(content=content, detected_at=format_timestamp(now)))
        return DedupResult(
            passed=True,
            reason="new content",
            cache_size=len(store.entries),
            threshold=threshold,
        )

    def check_actionable(self, intent: IntentResult) -> DedupResult:
        if not intent.actionable:
            return DedupResult(passed=False, reason="not actionable", cache_size=0, threshold=self.threshold(ACTIONABLE))
        return self.check(ACTIONABLE, intent.content)

    def check_noteworthy(self, intent: IntentResult) -> DedupResult:
        if not intent.noteworthy:
            return DedupResult(passed=False, reason="not noteworthy", cache_size=0, threshold=self.threshold(NOTEWORTHY))
        return self.check(NOTEWORTHY, intent.content)

    def compact(self) -> Dict[str, int]:
        """Drop entries older than the lookback window from both logs. Returns removed counts."""
        cutoff = self._clock() - timedelta(days=self._settings().lookback_days)
        removed = {}
        for name, store in self._tracks.items():
            entries = store.entries
            kept = [
                e for e in entries
                if (parse_timestamp(e.detected_at) or cutoff) >= cutoff
            ]
            removed[name] = len(entries) - len(kept)
            if removed[name]:
                store.rewrite(kept)
                logger.info("Compacted %s dedup log: removed %d entries", name, removed[name])
        return removed
