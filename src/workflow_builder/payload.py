"""Extraction of structured payloads from free-text generator responses.

Generators frequently wrap JSON in markdown fences or surround it with
prose.  Parsing never raises; callers receive a tagged result:
``Parsed(value)`` or ``ParseFailed(reason, preview)``.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from pydantic import BaseModel, ValidationError

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

_JSON_FENCE_RE = re.compile(r"```json\s*(.*?)```", re.IGNORECASE | re.DOTALL)
_ANY_FENCE_RE = re.compile(r"```[A-Za-z0-9_-]*\s*(.*?)```", re.DOTALL)

_PREVIEW_CHARS = 200


@dataclass(frozen=True)
class Parsed(Generic[T]):
    value: T


@dataclass(frozen=True)
class ParseFailed:
    reason: str
    preview: str = ""


ParseResult = Union[Parsed[T], ParseFailed]


def _preview(text: str) -> str:
    text = text.strip()
    if len(text) <= _PREVIEW_CHARS:
        return text
    return text[:_PREVIEW_CHARS] + "..."


def _candidates(text: str) -> list[str]:
    """Ordered candidate substrings that may hold the payload."""
    found = [m.group(1) for m in _JSON_FENCE_RE.finditer(text)]
    found += [m.group(1) for m in _ANY_FENCE_RE.finditer(text)]
    found.append(text)
    return [c.strip() for c in found if c.strip()]


def extract_json_payload(text: Any, expect: type = dict) -> ParseResult[Any]:
    """Find and decode the first JSON value of type *expect* in *text*.

    Tries, in order: ```json fenced blocks, any fenced block, the whole
    text, and finally the first decodable value starting at any ``{``
    (or ``[`` when a list is expected) embedded in prose.

    Args:
        text: Raw generator response.
        expect: Required JSON container type (``dict`` or ``list``).

    Returns:
        ``Parsed`` with the decoded value, or ``ParseFailed``.
    """
    if not isinstance(text, str):
        return ParseFailed(f"expected text, got {type(text).__name__}")
    if not text.strip():
        return ParseFailed("empty response")

    decoder = json.JSONDecoder()
    for candidate in _candidates(text):
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, expect):
            return Parsed(value)

    opener = "[" if expect is list else "{"
    start = text.find(opener)
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, expect):
            return Parsed(value)
        start = text.find(opener, start + 1)

    return ParseFailed(
        f"no JSON {expect.__name__} found in response", preview=_preview(text)
    )


def parse_model(text: Any, model: type[M]) -> ParseResult[M]:
    """Extract a JSON object from *text* and validate it against *model*."""
    result = extract_json_payload(text)
    if isinstance(result, ParseFailed):
        return result
    try:
        return Parsed(model.model_validate(result.value))
    except ValidationError as exc:
        return ParseFailed(
            f"payload does not match {model.__name__}: {exc.error_count()} error(s)",
            preview=_preview(text),
        )
