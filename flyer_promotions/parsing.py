"""
Response parser: turns raw vision-model text into a PageExtraction.

Model output is untrusted. It may be wrapped in markdown fences, contain
typographic quotes, or carry commentary before/after the JSON object. The
parser cleans the text, tries a direct decode, then falls back to locating
the first balanced {...} object. Anything that still fails raises
ResponseParseError; no other exception escapes.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from pydantic import ValidationError

from flyer_promotions.graph.state import PageExtraction

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```[A-Za-z0-9_+-]*[ \t]*\n?")
_SMART_QUOTES = {"“": '"', "”": '"'}


class ResponseParseError(Exception):
    """Raised when model output cannot be decoded into the promotion schema."""

    def __init__(self, message: str, raw_text: Optional[str] = None):
        super().__init__(message)
        self.raw_text = raw_text


def clean_response_text(text: str) -> str:
    """Strip code fences (any language tag), trim and straighten smart quotes."""
    cleaned = _FENCE_RE.sub("", text or "")
    cleaned = cleaned.strip()
    for smart, straight in _SMART_QUOTES.items():
        cleaned = cleaned.replace(smart, straight)
    return cleaned


def extract_balanced_object(text: str) -> Optional[str]:
    """Return the substring from the first '{' to its matching '}'.

    Braces inside JSON string literals are skipped, so a value such as
    "Akcija {1+1}" does not end the object early. Returns None when no
    balanced object exists.
    """
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
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
                return text[start:i + 1]
    return None


# json.loads accepts Infinity, NaN and 1e999, so numeric coercion can fail too
_DECODE_ERRORS = (ValueError, ValidationError, TypeError, ArithmeticError, RecursionError)


def _decode(candidate: str) -> PageExtraction:
    data: Any = json.loads(candidate)
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return PageExtraction.model_validate(data)


def parse_promotion_response(raw_text: str) -> PageExtraction:
    """Parse raw model text into a PageExtraction.

    Raises:
        ResponseParseError: if neither the cleaned text nor the first
            balanced object decodes against the schema.
    """
    if not raw_text or not raw_text.strip():
        raise ResponseParseError("model returned an empty response", raw_text)

    cleaned = clean_response_text(raw_text)

    try:
        return _decode(cleaned)
    except _DECODE_ERRORS as exc:
        first_error = exc

    candidate = extract_balanced_object(cleaned)
    if candidate is not None and candidate != cleaned:
        try:
            parsed = _decode(candidate)
            logger.debug("Recovered JSON object from surrounding text (%d chars)", len(candidate))
            return parsed
        except _DECODE_ERRORS as exc:
            raise ResponseParseError(
                f"failed to parse JSON response: {exc}", raw_text
            ) from exc

    raise ResponseParseError(
        f"failed to parse JSON response: {first_error}", raw_text
    ) from first_error
