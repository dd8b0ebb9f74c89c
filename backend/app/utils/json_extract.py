"""Lenient JSON object extraction from model free text.

Last-resort path for a phase whose model answered in prose instead of calling
its output tool. Accepts bare JSON, fenced JSON, and JSON buried in a preamble
or postamble.
"""

from __future__ import annotations

import json
import re
from typing import Any

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)


def strip_code_fence(text: str) -> str:
    """Return the body of the first ``` fenced block, or text unchanged."""
    match = _FENCE_RE.search(text)
    if match is None:
        return text.strip()
    return match.group(1).strip()


def _balanced_object_end(text: str, start: int) -> int | None:
    """Index one past the brace closing the object opened at text[start]."""
    depth = 0
    in_string = False
    escape_next = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape_next:
            escape_next = False
            continue
        if in_string:
            if ch == "\\":
                escape_next = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Find and parse the first JSON object in text.

    Returns None when nothing parses to a dict; never raises.
    """
    if not text or not text.strip():
        return None

    candidate = strip_code_fence(text)
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    # Walk each opening brace until one yields a parseable object
    start = candidate.find("{")
    while start != -1:
        end = _balanced_object_end(candidate, start)
        if end is None:
            break
        try:
            parsed = json.loads(candidate[start:end])
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            return parsed
        start = candidate.find("{", start + 1)
    return None
