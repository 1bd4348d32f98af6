"""
Extract a JSON object from free-form model text.

Strategies, in order:
1. the first fenced code block (```json ... ``` or ``` ... ```)
2. the first balanced top-level ``{...}`` span that parses
3. give up with ``ResponseParseError``
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterator, Optional

from ..errors import ResponseParseError

_FENCE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)


def _balanced_objects(text: str) -> Iterator[str]:
    """Top-level ``{...}`` spans in order, ignoring braces inside string literals."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        end = None
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
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
                    end = i
                    break
        if end is None:
            # unbalanced from here; try the next opening brace
            start = text.find("{", start + 1)
            continue
        yield text[start:end + 1]
        start = text.find("{", end + 1)


def _loads_object(candidate: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(candidate)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def unwrap_json_response(text: Any) -> Dict[str, Any]:
    if not isinstance(text, str) or not text.strip():
        raise ResponseParseError("Empty model response")

    fenced = _FENCE.search(text)
    if fenced:
        parsed = _loads_object(fenced.group(1).strip())
        if parsed is not None:
            return parsed

    for span in _balanced_objects(text):
        parsed = _loads_object(span)
        if parsed is not None:
            return parsed

    preview = text.strip()[:120].replace("\n", " ")
    raise ResponseParseError(f"No JSON object found in model response: {preview!r}")
