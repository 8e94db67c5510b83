"""Shared utilities for parsing LLM responses."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional


def _strip_fences(text: str) -> str:
    if text.lstrip().startswith("```"):
        lines = text.split("\n")
        lines = [l for l in lines if not l.strip().startswith("```")]
        return "\n".join(lines)
    return text


def parse_llm_json(raw: str) -> dict:
    """Parse JSON from an LLM response, handling code fences and preamble text.

    Tries in order:
    1. Strip markdown code fences, then json.loads
    2. Extract substring between first '{' and last '}', then json.loads
    3. Return empty dict
    """
    if not raw:
        return {}

    text = _strip_fences(raw.strip())

    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    start = raw.find("{")
    end = raw.rfind("}") + 1
    if start >= 0 and end > start:
        try:
            parsed = json.loads(raw[start:end])
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

    return {}


@dataclass
class JsonParse:
    """Tagged result of parsing model output: ok with data, or malformed with the raw text"""
    ok: bool
    data: Dict[str, Any] = field(default_factory=dict)
    raw: str = ""

    @property
    def malformed(self) -> bool:
        return not self.ok


def extract_json_object(raw: str) -> JsonParse:
    """Strict parse of the first JSON object in raw. Never raises."""
    data = parse_llm_json(raw or "")
    if data:
        return JsonParse(ok=True, data=data, raw=raw)
    # "{}" is a valid, empty object
    if raw and re.fullmatch(r"\s*\{\s*\}\s*", _strip_fences(raw)):
        return JsonParse(ok=True, data={}, raw=raw)
    return JsonParse(ok=False, raw=raw or "")


def has_json_object(raw: str) -> bool:
    return extract_json_object(raw).ok


_BOOL_FIELD = r'"{name}"\s*:\s*(true|false)'
_STRING_FIELD = r'"{name}"\s*:\s*"((?:[^"\\]|\\.)*)'
_NULL_FIELD = r'"{name}"\s*:\s*null'


def extract_fields(
    raw: str,
    bool_fields: Iterable[str] = (),
    string_fields: Iterable[str] = (),
) -> Dict[str, Any]:
    """Field-by-field regex recovery for malformed JSON.

    Handles trailing commas, unterminated braces and truncated strings.
    Only fields that are found are present in the result; a string field
    written as null maps to None.
    """
    result: Dict[str, Any] = {}
    if not raw:
        return result

    for name in bool_fields:
        m = re.search(_BOOL_FIELD.format(name=re.escape(name)), raw, re.IGNORECASE)
        if m:
            result[name] = m.group(1).lower() == "true"

    for name in string_fields:
        m = re.search(_STRING_FIELD.format(name=re.escape(name)), raw)
        if m:
            result[name] = _unescape(m.group(1))
        elif re.search(_NULL_FIELD.format(name=re.escape(name)), raw):
            result[name] = None

    return result


def _unescape(value: str) -> str:
    try:
        return json.loads(f'"{value}"')
    except json.JSONDecodeError:
        return value.replace('\\"', '"').replace("\\n", "\n")


def coerce_bool(value: Any) -> Optional[bool]:
    """Model booleans arrive as bools, strings or numbers"""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "1"):
            return True
        if lowered in ("false", "no", "0", ""):
            return False
    return None
