"""Shared utilities for parsing and cleaning LLM responses."""

from __future__ import annotations

import json
import re

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z]*\s*$", re.MULTILINE)
_SURROUNDING_QUOTES_RE = re.compile(r"^[\"']|[\"']$")
_EXCESS_NEWLINES_RE = re.compile(r"\n{3,}")


def parse_llm_json(raw: str) -> dict:
    """Parse a JSON object from an LLM response.

    Tries in order:
    1. json.loads after stripping markdown code fences
    2. json.loads on the substring between the first '{' and the last '}'
    3. Return empty dict

    Non-object JSON (lists, strings) also yields an empty dict.
    """
    if not raw or not raw.strip():
        return {}

    candidates = [_FENCE_RE.sub("", raw).strip()]
    start = raw.find("{")
    end = raw.rfind("}") + 1
    if start >= 0 and end > start:
        candidates.append(raw[start:end])

    for text in candidates:
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    return {}


def clean_answer_text(answer: str) -> str:
    """Trim, drop surrounding quotes and collapse runs of blank lines."""
    text = answer.strip()
    text = _SURROUNDING_QUOTES_RE.sub("", text)
    return _EXCESS_NEWLINES_RE.sub("\n\n", text)
