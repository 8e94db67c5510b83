"""
Capture source client and sample filtering.

ScreenpipeClient queries the local OCR service over HTTP and appends every
query/response pair to a JSONL audit log. SampleFilter applies the live
FilterConfig plus time-window and near-duplicate checks.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import httpx

from ..common.config import AUDIT_LOG_PATH, FilterConfig
from ..common.errors import CaptureError
from ..common.schemas import Sample

logger = logging.getLogger("livepipe.pipeline.capture")

DEFAULT_QUERY_LIMIT = 10
HOTKEY_LOOKBACK_MS = 300_000
HOTKEY_QUERY_LIMIT = 5
POLL_OVERLAP_MS = 2000
NEAR_DUP_OVERLAP = 0.8
NEAR_DUP_MIN_LENGTH_RATIO = 0.5
SNIPPET_CHARS = 120


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_timestamp_ms(value: Any) -> Optional[int]:
    if not value:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def sample_from_item(item: Dict[str, Any]) -> Optional[Sample]:
    """Convert one /search result item into a Sample (OCR items only)"""
    if str(item.get("type", "")).upper() != "OCR":
        return None
    content = item.get("content") or {}
    text = content.get("text") or ""
    if not text:
        return None
    return Sample(
        text=text,
        app_name=content.get("app_name") or content.get("appName") or "unknown",
        window_name=content.get("window_name") or content.get("windowName") or "",
        timestamp_ms=_parse_timestamp_ms(content.get("timestamp")) or 0,
    )


class ScreenpipeClient:
    """HTTP client for the local screen-capture service"""

    def __init__(
        self,
        base_url: str = "http://localhost:3030",
        timeout: float = 10.0,
        audit_log_path: Optional[Path] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.audit_log_path = Path(audit_log_path) if audit_log_path else AUDIT_LOG_PATH
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def close(self) -> None:
        await self._client.aclose()

    async def query(
        self,
        content_type: str,
        start_ms: int,
        end_ms: int,
        limit: int = DEFAULT_QUERY_LIMIT,
    ) -> List[Sample]:
        """
        Fetch samples captured in [start_ms, end_ms].

        Raises:
            CaptureError: service unreachable, HTTP error or malformed body
        """
        params = {
            "content_type": content_type,
            "limit": limit,
            "start_time": _iso(start_ms),
            "end_time": _iso(end_ms),
        }
        logger.debug("Querying %s/search %s", self.base_url, params)

        try:
            response = await self._client.get(f"{self.base_url}/search", params=params)
        except httpx.HTTPError as e:
            raise CaptureError(f"capture service unreachable: {e}") from e

        if response.status_code >= 400:
            raise CaptureError(f"capture service HTTP {response.status_code}: {response.text[:200]}")

        try:
            body = response.json()
        except ValueError as e:
            raise CaptureError(f"capture service returned invalid JSON: {e}") from e

        self._audit(params, body)

        items = (body.get("data") or []) if isinstance(body, dict) else []
        logger.debug("Query returned %d items", len(items))
        samples = []
        for item in items:
            sample = sample_from_item(item) if isinstance(item, dict) else None
            if sample:
                samples.append(sample)
        return samples

    def _audit(self, query: Dict[str, Any], response: Any) -> None:
        try:
            self.audit_log_path.parent.mkdir(parents=True, exist_ok=True)
            line = json.dumps(
                {"ts": datetime.now(timezone.utc).isoformat(), "query": query, "response": response},
                ensure_ascii=False,
            )
            with open(self.audit_log_path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            logger.warning("Failed to write audit log: %s", e)


# ============================================================================
# Filtering
# ============================================================================

@dataclass
class FetchResult:
    """Kept texts plus skip counters for the FETCH line"""
    texts: List[str] = field(default_factory=list)
    apps: Set[str] = field(default_factory=set)
    total_items: int = 0
    skipped_app: int = 0
    skipped_window: int = 0
    skipped_short: int = 0
    skipped_dedup: int = 0
    skipped_time: int = 0

    @property
    def chars(self) -> int:
        return sum(len(t) for t in self.texts)


def is_near_duplicate(a: str, b: str) -> bool:
    """Same-position character overlap above 80% of the longer text"""
    shorter, longer = min(len(a), len(b)), max(len(a), len(b))
    if longer == 0:
        return True
    if shorter / longer < NEAR_DUP_MIN_LENGTH_RATIO:
        return False
    common = sum(1 for i in range(shorter) if a[i] == b[i])
    return common / longer > NEAR_DUP_OVERLAP


class SampleFilter:
    def __init__(self, config: FilterConfig, skew_tolerance_ms: int = 0):
        self.config = config
        self.skew_tolerance_ms = skew_tolerance_ms
        self._allowed = {app.lower() for app in config.allowed_apps}
        self._blocked = [w.lower() for w in config.blocked_windows]

    def is_app_allowed(self, app_name: str) -> bool:
        if not self._allowed:
            return True
        if not app_name or app_name.lower() == "unknown":
            return True
        return app_name.lower() in self._allowed

    def is_window_blocked(self, window_name: str) -> bool:
        lower = (window_name or "").lower()
        return any(b in lower for b in self._blocked)

    def apply(
        self,
        samples: List[Sample],
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> FetchResult:
        result = FetchResult(total_items=len(samples))
        kept: List[Sample] = []

        for sample in samples:
            if start_ms is not None and end_ms is not None and sample.timestamp_ms:
                if (
                    sample.timestamp_ms < start_ms - self.skew_tolerance_ms
                    or sample.timestamp_ms > end_ms + self.skew_tolerance_ms
                ):
                    result.skipped_time += 1
                    continue
            if not self.is_app_allowed(sample.app_name):
                result.skipped_app += 1
                continue
            if self.is_window_blocked(sample.window_name):
                result.skipped_window += 1
                continue
            if len(sample.text) < self.config.min_text_length:
                result.skipped_short += 1
                continue
            kept.append(sample)

        seen: List[str] = []
        for sample in kept:
            if any(is_near_duplicate(prev, sample.text) for prev in seen):
                result.skipped_dedup += 1
                continue
            seen.append(sample.text)
            result.texts.append(sample.text)
            result.apps.add(sample.app_name)

        return result


def poll_window(now_ms: int, lookback_ms: int, last_poll_end_ms: int) -> int:
    """Start of the next poll window: the later of now - lookback and last end - overlap"""
    if last_poll_end_ms > 0:
        return max(last_poll_end_ms - POLL_OVERLAP_MS, now_ms - lookback_ms)
    return now_ms - lookback_ms


def extract_snippet(texts: List[str], content_hint: str, width: int = SNIPPET_CHARS) -> str:
    """~width chars of the captured text around the keywords of content_hint"""
    combined = re.sub(r"\s+", " ", " ".join(texts))
    if len(combined) <= width:
        return combined

    keywords = re.findall(r"[\u4e00-\u9fff]{2,}|[a-zA-Z]{3,}|\d{2,}", content_hint or "")

    best_pos, best_score = 0, 0
    for i in range(0, len(combined) - width // 2, 20):
        window = combined[i:i + width]
        score = sum(1 for kw in keywords if kw in window)
        if score > best_score:
            best_score, best_pos = score, i

    snippet = combined[best_pos:best_pos + width].strip()
    return snippet + ("..." if best_pos + width < len(combined) else "")
