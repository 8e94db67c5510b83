"""Tests for the capture client and sample filtering."""

import json

import httpx
import pytest

from livepipe.common.config import FilterConfig
from livepipe.common.errors import CaptureError
from livepipe.common.schemas import Sample
from livepipe.pipeline.capture import (
    SampleFilter,
    ScreenpipeClient,
    extract_snippet,
    poll_window,
    sample_from_item,
)

T0 = 1_700_000_000_000


def _ocr(text, app="Slack", window="general", ts="2023-11-14T22:13:20Z"):
    return {"type": "OCR", "content": {"text": text, "app_name": app, "window_name": window, "timestamp": ts}}


class TestSampleFromItem:
    def test_ocr_item(self):
        sample = sample_from_item(_ocr("hello there"))
        assert sample == Sample(text="hello there", app_name="Slack", window_name="general", timestamp_ms=T0)

    def test_camel_case_keys(self):
        item = {"type": "OCR", "content": {"text": "x", "appName": "Mail", "windowName": "Inbox"}}
        sample = sample_from_item(item)
        assert sample.app_name == "Mail"
        assert sample.window_name == "Inbox"

    def test_non_ocr_ignored(self):
        assert sample_from_item({"type": "Audio", "content": {"text": "x"}}) is None


class TestSampleFilter:
    def test_app_allow_list(self):
        f = SampleFilter(FilterConfig(allowed_apps=["Slack"], min_text_length=1))
        result = f.apply([
            Sample(text="from slack", app_name="slack"),
            Sample(text="from mail", app_name="Mail"),
            Sample(text="from unknown", app_name="unknown"),
        ])
        assert result.texts == ["from slack", "from unknown"]
        assert result.skipped_app == 1

    def test_blocked_windows_and_short(self):
        f = SampleFilter(FilterConfig(min_text_length=10))
        result = f.apply([
            Sample(text="terminal running screenpipe", window_name="ScreenPipe logs"),
            Sample(text="tiny"),
            Sample(text="this one survives"),
        ])
        assert result.texts == ["this one survives"]
        assert result.skipped_window == 1
        assert result.skipped_short == 1
        assert result.chars == len("this one survives")

    def test_near_duplicates_dropped(self):
        f = SampleFilter(FilterConfig(min_text_length=1))
        result = f.apply([
            Sample(text="Remember to pay rent by Friday"),
            Sample(text="Remember to pay rent by Friday!"),
            Sample(text="Completely different text here"),
        ])
        assert len(result.texts) == 2
        assert result.skipped_dedup == 1

    def test_time_window_with_skew(self):
        f = SampleFilter(FilterConfig(min_text_length=1), skew_tolerance_ms=2000)
        result = f.apply([
            Sample(text="inside", timestamp_ms=T0 - 1500),
            Sample(text="too old", timestamp_ms=T0 - 5000),
            Sample(text="no timestamp"),
        ], start_ms=T0, end_ms=T0 + 5000)
        assert result.texts == ["inside", "no timestamp"]
        assert result.skipped_time == 1


class TestPollWindow:
    def test_first_poll_uses_lookback(self):
        assert poll_window(T0, 60_000, 0) == T0 - 60_000

    def test_overlap_with_previous(self):
        assert poll_window(T0, 60_000, T0 - 5000) == T0 - 7000

    def test_lookback_caps_gap(self):
        assert poll_window(T0, 60_000, T0 - 600_000) == T0 - 60_000


class TestExtractSnippet:
    def test_short_text_returned_whole(self):
        assert extract_snippet(["a  b", "c"], "x") == "a b c"

    def test_window_around_keywords(self):
        filler = "lorem ipsum " * 30
        texts = [filler + "remember to renew passport before June " + filler]
        snippet = extract_snippet(texts, "renew passport", width=60)
        assert "passport" in snippet
        assert len(snippet) <= 63


class TestScreenpipeClient:
    @pytest.mark.asyncio
    async def test_query(self, tmp_path):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"data": [_ocr("hello there"), {"type": "UI", "content": {}}]})

        audit = tmp_path / "logs" / "screenpipe-raw.jsonl"
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = ScreenpipeClient("http://localhost:3030/", audit_log_path=audit, http_client=http)

        samples = await client.query("ocr", T0 - 60_000, T0, limit=10)
        await client.close()

        assert [s.text for s in samples] == ["hello there"]
        assert seen["path"] == "/search"
        assert seen["params"]["content_type"] == "ocr"
        assert seen["params"]["limit"] == "10"
        assert seen["params"]["end_time"] == "2023-11-14T22:13:20Z"

        record = json.loads(audit.read_text().splitlines()[0])
        assert record["query"]["content_type"] == "ocr"
        assert len(record["response"]["data"]) == 2

    @pytest.mark.asyncio
    async def test_http_error(self, tmp_path):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500, text="down")))
        client = ScreenpipeClient(audit_log_path=tmp_path / "a.jsonl", http_client=http)
        with pytest.raises(CaptureError, match="HTTP 500"):
            await client.query("ocr", 0, 1)

    @pytest.mark.asyncio
    async def test_unreachable(self, tmp_path):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = ScreenpipeClient(audit_log_path=tmp_path / "a.jsonl", http_client=http)
        with pytest.raises(CaptureError, match="unreachable"):
            await client.query("ocr", 0, 1)
