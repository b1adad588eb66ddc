"""Best-effort recovery of a JSON object from free-form agent text."""

import json
import re

_CODE_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


def _loads(text: str):
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None


def extract_json(text: str | None):
    """Return the structured payload embedded in ``text``, or None.

    Tried in order, first success wins: the whole trimmed text, the inside of
    the first fenced code block (optionally tagged ``json``), then the span from
    the first ``{`` to the last ``}``. None means "no structured answer yet".
    """
    if not text:
        return None

    parsed = _loads(text.strip())
    if parsed is not None:
        return parsed

    match = _CODE_BLOCK.search(text)
    if match:
        parsed = _loads(match.group(1).strip())
        if parsed is not None:
            return parsed

    first = text.find("{")
    last = text.rfind("}")
    if first != -1 and last > first:
        return _loads(text[first:last + 1])

    return None
