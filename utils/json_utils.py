"""
Best-effort JSON recovery from model output.

Models wrap JSON in markdown fences, prepend chatter, or trail off
with explanations. `decode_json` strips fences, locates the first
balanced object or array and parses it. Callers always supply the
value to use when nothing parses, so a bad response never raises past
the call site.
"""

import json
import re
from typing import Any, Optional, TypeVar

import structlog

from exceptions import MalformedResponseError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*")


def strip_code_fences(text: str) -> str:
    """Remove markdown code fence markers."""
    return _FENCE_RE.sub("", text).strip()


def _balanced_span_at(text: str, start: int) -> tuple[Optional[str], bool]:
    """
    Scan one candidate opener at `start`.

    Returns (span, mismatched). `span` is the balanced text when the
    opener closes; `mismatched` is True when a wrong closer was hit.
    """
    stack = ["}" if text[start] == "{" else "]"]
    in_string = False
    escaped = False

    for i in range(start + 1, len(text)):
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
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]":
            if ch != stack[-1]:
                return None, True
            stack.pop()
            if not stack:
                return text[start:i + 1], False

    return None, False


def find_json_span(text: str) -> Optional[str]:
    """
    Return the first balanced JSON object or array in text.

    Brackets inside string literals are ignored. An opener that meets a
    mismatched closer is skipped and the search resumes after it.
    Returns None when no opening bracket is ever closed.
    """
    start = 0
    while True:
        positions = [p for p in (text.find("{", start), text.find("[", start)) if p != -1]
        if not positions:
            return None
        start = min(positions)

        span, mismatched = _balanced_span_at(text, start)
        if span is not None:
            return span
        if not mismatched:
            return None
        start += 1


def parse_json_strict(text: str) -> Any:
    """
    Decode model output or raise.

    Raises:
        MalformedResponseError: If no JSON value can be recovered
    """
    cleaned = strip_code_fences(text or "")
    if not cleaned:
        raise MalformedResponseError("Empty model response")

    try:
        return json.loads(cleaned)
    except (json.JSONDecodeError, RecursionError):
        pass

    span = find_json_span(cleaned)
    if span is None:
        raise MalformedResponseError("No JSON found in model response", preview=cleaned)

    try:
        return json.loads(span)
    except (json.JSONDecodeError, RecursionError) as e:
        raise MalformedResponseError(f"Invalid JSON in model response: {e}", preview=span)


def decode_json(text: str, fallback: T, context: str = "model_response") -> Any:
    """
    Decode model output, returning `fallback` on any failure.

    Args:
        text: Raw model text
        fallback: Value returned when decoding fails
        context: Label for the warning log

    Returns:
        Parsed JSON value, or fallback
    """
    try:
        return parse_json_strict(text)
    except MalformedResponseError as e:
        logger.warning(
            "json_decode_failed",
            context=context,
            error=e.message,
            response_preview=(text or "")[:200]
        )
        return fallback
