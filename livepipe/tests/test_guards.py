"""Tests for deterministic post-classification guards."""

from datetime import datetime

from livepipe.common.config import GuardConfig
from livepipe.common.schemas import IntentResult
from livepipe.pipeline.guards import (
    GuardRules,
    apply_guards,
    clean_ocr_text,
    is_code_line,
    is_due_soon,
    is_garbled,
)

NOW = datetime(2024, 5, 10, 9, 0)


def _guard(**fields):
    return apply_guards(IntentResult(**fields), GuardRules(), NOW)


class TestCleaning:
    def test_code_lines(self):
        assert is_code_line("const x = require('y');")
        assert is_code_line("import os")
        assert not is_code_line("记得明天下午交报告")
        assert not is_code_line("Remind me to call the bank")

    def test_clean_drops_code_and_short_lines(self):
        text = "ok\nimport os\nPlease send the invoice today\n}"
        assert clean_ocr_text([text]) == "Please send the invoice today"

    def test_clean_caps_length(self):
        assert len(clean_ocr_text(["word " * 2000])) == 4000

    def test_garbled(self):
        assert is_garbled("▓▓▒▒░░##@@")
        assert not is_garbled("记得交房租")
        assert not is_garbled("")


class TestApplyGuards:
    def test_empty_content_clears_everything(self):
        intent, _ = _guard(actionable=True, urgent=True, content="")
        assert intent.is_empty
        assert not intent.urgent

    def test_garbled_content(self):
        intent, fired = _guard(actionable=True, content="▓▓▒▒░░##@@")
        assert intent.is_empty
        assert "garbled" in fired

    def test_noise_suppressed(self):
        intent, fired = _guard(actionable=True, noteworthy=True, content="Limited-time offer, buy now and save 50% off")
        assert intent.is_empty
        assert "noise" in fired

    def test_noise_kept_when_task_present(self):
        intent, _ = _guard(actionable=True, content="Please buy now the train tickets for Friday")
        assert intent.actionable

    def test_no_action_clears_due(self):
        intent, fired = _guard(actionable=True, content="Rent already paid", due_time="2024-05-11T15:00")
        assert not intent.actionable
        assert intent.due_time is None
        assert "no-action" in fired

    def test_noteworthy_gate(self):
        intent, fired = _guard(noteworthy=True, content="The weather is nice")
        assert not intent.noteworthy
        assert "noteworthy-gate" in fired

        intent, _ = _guard(noteworthy=True, content="We decided to ship on Monday")
        assert intent.noteworthy

    def test_urgency_from_keyword(self):
        intent, _ = _guard(actionable=True, content="URGENT: submit the expense report")
        assert intent.urgent

    def test_model_urgency_ignored_without_evidence(self):
        intent, fired = _guard(actionable=True, urgent=True, content="Remember to water the plants")
        assert not intent.urgent
        assert "urgency" in fired

    def test_urgency_from_due_within_hour(self):
        intent, _ = _guard(actionable=True, content="Call the dentist", due_time="2024-05-10T09:45")
        assert intent.urgent

    def test_urgent_requires_a_dimension(self):
        intent, _ = _guard(urgent=True, content="紧急通知")
        assert not intent.urgent

    def test_due_cleared_when_not_actionable(self):
        intent, _ = _guard(noteworthy=True, content="We agreed on the budget", due_time="2024-05-11T10:00")
        assert intent.due_time is None

    def test_configured_patterns_extend_defaults(self):
        rules = GuardRules.from_config(GuardConfig(noise_patterns=[r"\bwebinar\b"]))
        intent, _ = apply_guards(
            IntentResult(actionable=True, content="Join our webinar on growth hacking"), rules, NOW
        )
        assert intent.is_empty


class TestDueSoon:
    def test_window(self):
        assert is_due_soon("2024-05-10T10:00", NOW)
        assert not is_due_soon("2024-05-10T10:01", NOW)
        assert not is_due_soon("2024-05-10T08:59", NOW)
        assert not is_due_soon(None, NOW)
