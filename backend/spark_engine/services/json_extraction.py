"""Defensive JSON parsing for model replies."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_LEADING_FENCE_RE = re.compile(r"^```[a-zA-Z]*\n")
_TRAILING_FENCE_RE = re.compile(r"\n```$")
_ANY_FENCE_RE = re.compile(r"```(?:json)?\n?|\n?```")


def _brace_slice(text: str) -> str | None:
    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last == -1 or last <= first:
        return None
    return text[first:last + 1]


def safe_json_parse(text: str) -> Any:
    """
    Parse JSON from a model reply.

    A fenced reply is unwrapped and parsed strictly. Otherwise the span from
    the first ``{`` to the last ``}`` is tried, then the whole text, so the
    raised error (if any) describes the original reply.

    Raises:
        json.JSONDecodeError: If no JSON can be recovered
    """
    trimmed = text.strip()

    if trimmed.startswith("```"):
        body = _TRAILING_FENCE_RE.sub("", _LEADING_FENCE_RE.sub("", trimmed, count=1))
        return json.loads(body.strip())

    candidate = _brace_slice(trimmed)
    if candidate is not None:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            pass

    return json.loads(trimmed)


def parse_structured_output(result: Any) -> Any:
    """
    Parse a prompt step's reply into JSON when possible.

    Never raises: an unparseable reply is returned as it came in.
    """
    if isinstance(result, str):
        content = result
    elif isinstance(result, dict) and "content" in result:
        content = str(result["content"])
    else:
        return result

    cleaned = _ANY_FENCE_RE.sub("", content).strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as exc:
        candidate = _brace_slice(cleaned)
        if candidate is not None:
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                pass
        logger.warning(
            "Failed to parse structured output as JSON: %s",
            exc,
            extra={"contentPreview": cleaned[:100]},
        )
        return result
