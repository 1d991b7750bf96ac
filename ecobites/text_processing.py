"""Best-effort structured extraction from language-model responses.

Models wrap JSON in markdown fences, prefix it with prose, or get cut off
mid-object. ``extract_json_object`` returns the first parseable top-level
``{...}`` object, or ``None``.
"""
import json
import re
from typing import Any, Dict, Optional

_FENCE_RE = re.compile(r"```[ \t]*(?:json|JSON)?[ \t]*\n?")
_GREEDY_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text or "").strip()


def _balanced_objects(text: str):
    """Yield each balanced top-level ``{...}`` span, ignoring braces in strings."""
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            if depth > 0:
                in_string = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                yield text[start : i + 1]


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    cleaned = strip_code_fences(text)
    if not cleaned:
        return None
    for candidate in _balanced_objects(cleaned):
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    # Last resort: first "{" to last "}" (handles stray quotes in prose).
    m = _GREEDY_OBJECT_RE.search(cleaned)
    if m:
        try:
            parsed = json.loads(m.group(0))
        except ValueError:
            return None
        if isinstance(parsed, dict):
            return parsed
    return None


def normalize_query(text: str) -> str:
    return (text or "").strip().lower()
