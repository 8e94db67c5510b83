"""Tests for the two-stage review gate."""

import json
from datetime import datetime
from unittest.mock import Mock

import pytest

from livepipe.common.errors import ProviderError, ReviewError
from livepipe.common.schemas import IntentResult
from livepipe.pipeline.review_gate import ReviewContext, ReviewGate, roll_forward

NOW = datetime(2024, 5, 10, 16, 0)


def _gate(*replies):
    llm = Mock()
    llm.provider = "google"
    llm.model = "gemini-2.0-flash"
    llm.chat.side_effect = list(replies)
    return ReviewGate(llm, clock=lambda: NOW), llm


def _approve(**flags):
    return json.dumps({"approved": True, **flags, "reason": "ok"})


class TestRollForward:
    def test_future_untouched(self):
        assert roll_forward("2024-05-10T17:00", NOW) == "2024-05-10T17:00"

    def test_past_moves_to_next_day(self):
        assert roll_forward("2024-05-10T15:00", NOW) == "2024-05-11T15:00"

    def test_far_past(self):
        assert roll_forward("2024-05-01T09:00", NOW) == "2024-05-11T09:00"

    def test_none(self):
        assert roll_forward(None, NOW) is None


class TestReviewGate:
    @pytest.mark.asyncio
    async def test_refines_content_and_due(self):
        gate, llm = _gate(
            _approve(actionable=True, noteworthy=False, urgent=False),
            json.dumps({
                "approved": True,
                "refined_content": "下午3点前交房租",
                "refined_due_time": "2024-05-10T15:00",
                "actionable": True,
                "noteworthy": False,
                "urgent": False,
            }),
        )
        intent = IntentResult(actionable=True, content="记得交房租", due_time="2024-05-11T15:00")

        result = await gate.review(intent, ReviewContext(source_app="WeChat", text_snippet="房东: 记得交房租"))

        assert result.intent.content == "下午3点前交房租"
        assert result.intent.due_time == "2024-05-11T15:00"
        assert [s.stage for s in result.outcome.stages] == [1, 2]
        assert result.outcome.final_content == "下午3点前交房租"
        assert llm.chat.call_count == 2
        assert llm.chat.call_args.kwargs["json_mode"] is True

    @pytest.mark.asyncio
    async def test_reviewer_cannot_raise_flags(self):
        gate, _ = _gate(
            _approve(actionable=True, noteworthy=True, urgent=True),
            _approve(actionable=True, noteworthy=True, urgent=True),
        )
        intent = IntentResult(noteworthy=True, content="We decided to use Postgres")

        result = await gate.review(intent)

        assert result.intent.noteworthy
        assert not result.intent.actionable
        assert not result.intent.urgent

    @pytest.mark.asyncio
    async def test_stage1_rejection(self):
        gate, llm = _gate(json.dumps({"approved": False, "reason": "UI label"}))
        result = await gate.review(IntentResult(actionable=True, content="Settings"))

        assert result.intent is None
        assert result.outcome.rejected
        assert llm.chat.call_count == 1

    @pytest.mark.asyncio
    async def test_stage1_clears_every_flag(self):
        gate, llm = _gate(_approve(actionable=False, noteworthy=False))
        result = await gate.review(IntentResult(actionable=True, content="Read later"))

        assert result.intent is None
        assert llm.chat.call_count == 1

    @pytest.mark.asyncio
    async def test_stage1_unparsable_keeps_local(self):
        gate, _ = _gate("garbled", _approve(actionable=True))
        intent = IntentResult(actionable=True, content="Send invoice")
        result = await gate.review(intent)

        assert result.intent.actionable
        assert result.outcome.stages[0].outcome == "unparsable, kept local decision"

    @pytest.mark.asyncio
    async def test_stage2_unparsable_keeps_stage1(self):
        gate, _ = _gate(_approve(actionable=True, urgent=False), "not json at all")
        intent = IntentResult(actionable=True, urgent=True, content="URGENT: send invoice")

        result = await gate.review(intent)

        assert result.intent.content == "URGENT: send invoice"
        assert not result.intent.urgent

    @pytest.mark.asyncio
    async def test_stage2_rejection(self):
        gate, _ = _gate(_approve(actionable=True), json.dumps({"approved": False, "reason": "hallucination"}))
        result = await gate.review(IntentResult(actionable=True, content="Buy a yacht"))
        assert result.intent is None
        assert result.outcome.stages[-1].outcome == "rejected: hallucination"

    @pytest.mark.asyncio
    async def test_provider_failure_tags_stage(self):
        gate, _ = _gate(
            _approve(actionable=True),
            ProviderError("429", provider="google", reason="rate_limited", response_text="quota"),
        )
        with pytest.raises(ReviewError) as exc:
            await gate.review(IntentResult(actionable=True, content="Send invoice"))

        assert exc.value.stage == 2
        assert exc.value.reason == "rate_limited"
        assert exc.value.snippet == "quota"

    def test_source_label(self):
        gate, _ = _gate()
        assert gate.source == "external:google/gemini-2.0-flash"
