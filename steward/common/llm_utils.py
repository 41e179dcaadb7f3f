"""Shared utilities for parsing LLM responses."""

from __future__ import annotations

import json
from typing import Any


def strip_code_fences(raw: str) -> str:
    """Remove Markdown code-fence lines (```json ... ```) around a response."""
    text = raw.strip()
    if "```" not in text:
        return text
    lines = text.split("\n")
    lines = [l for l in lines if not l.strip().startswith("```")]
    return "\n".join(lines).strip()


def parse_llm_json_array(raw: str) -> Any:
    """Parse a JSON document expected to be an array.

    Returns whatever ``json.loads`` produced after fence stripping, so callers
    can reject non-list results. Raises ``json.JSONDecodeError`` when the text
    is not JSON at all.
    """
    if not raw or not raw.strip():
        raise json.JSONDecodeError("empty response", raw or "", 0)
    return json.loads(strip_code_fences(raw))
