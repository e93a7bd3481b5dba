"""
Pull a JSON plan object out of free-form model output.

Models wrap the plan in ```json fences, prepend chatter, or append
explanations. The extractor tries, in order: a ```json fence, any fence,
the first balanced {...} span that parses, and finally the whole text.
"""

import json
import re

from planbox.errors import PlanParseError


_JSON_FENCE = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_ANY_FENCE = re.compile(r"```\s*([\s\S]*?)```")


def strip_code_fence(text: str) -> str | None:
    """Return the interior of the first ```json fence, else of any fence, else None."""
    m = _JSON_FENCE.search(text)
    if m:
        return m.group(1).strip()
    m = _ANY_FENCE.search(text)
    if m:
        return m.group(1).strip()
    return None


def find_first_json_object(text: str) -> str | None:
    """
    Scan left to right for the first balanced top-level {...} span that parses.

    Braces inside string literals are ignored (escapes honored). A span that
    balances but fails to parse is discarded and scanning continues from there.
    """
    s = text.replace("\ufeff", "")
    in_str = False
    esc = False
    depth = 0
    start = -1

    for i, ch in enumerate(s):
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue

        if ch == '"':
            in_str = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}":
            if depth > 0:
                depth -= 1
            if depth == 0 and start != -1:
                candidate = s[start:i + 1].strip()
                try:
                    json.loads(candidate)
                    return candidate
                except ValueError:
                    start = -1

    return None


def _loads_object(text: str, source: str) -> dict:
    try:
        value = json.loads(text)
    except ValueError as e:
        raise PlanParseError(f"Invalid JSON in {source}: {e}") from e
    if not isinstance(value, dict):
        raise PlanParseError(f"Expected a JSON object in {source}, got {type(value).__name__}")
    return value


def extract_plan_json(text: str) -> dict:
    """Return the plan object embedded in `text`. Raises PlanParseError on failure."""
    if text is None:
        raise PlanParseError("Cannot parse empty string as JSON.")

    fenced = strip_code_fence(text)
    if fenced:
        return _loads_object(fenced, "fenced block")

    first = find_first_json_object(text)
    if first is not None:
        return _loads_object(first, "embedded object")

    trimmed = text.strip()
    if not trimmed:
        raise PlanParseError("Cannot parse empty string as JSON.")
    return _loads_object(trimmed, "response")
