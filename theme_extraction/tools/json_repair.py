"""
Strict JSON parsing for LLM output.

Cleans the usual LLM output issues, then validates against a pydantic schema:
- Markdown code block wrapping
- Prose before/after the JSON payload
- Truncated JSON (unclosed brackets/strings)
- Control characters inside strings

parse_model() never raises and never hands back an unvalidated dict: the
caller gets a ParseResult that is either ok(value) or fail(error).
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Generic, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class JsonParseError(ValueError):
    """Raised by load_json() when no JSON value can be recovered."""


@dataclass(frozen=True)
class ParseResult(Generic[M]):
    """Tagged result: exactly one of value / error is set."""
    value: Optional[M] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, value: M) -> "ParseResult[M]":
        return cls(value=value)

    @classmethod
    def fail(cls, error: str) -> "ParseResult[M]":
        return cls(error=error)

    @property
    def is_ok(self) -> bool:
        return self.error is None and self.value is not None


_FENCE = re.compile(r"^```[a-zA-Z]*\s*\n?|\n?```\s*$")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_CLOSERS = {"{": "}", "[": "]"}
_decoder = json.JSONDecoder(strict=False)


def strip_code_fences(response: str) -> str:
    return _FENCE.sub("", response.strip()).strip()


def _open_brackets(text: str) -> Tuple[List[str], bool, int]:
    """Walk `text` outside of string literals.

    Returns (unclosed brackets in nesting order, ends inside a string,
    index just past the point where the first value closed or -1).
    """
    stack: List[str] = []
    in_string = escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(ch)
        elif stack and ch == _CLOSERS[stack[-1]]:
            stack.pop()
            if not stack:
                return [], False, i + 1
    return stack, in_string, -1


def repair_truncated_json(text: str) -> str:
    """Close a dangling string and every unclosed bracket of a cut-off payload."""
    stack, in_string, _ = _open_brackets(text)
    if in_string:
        text += '"'
    text = text.rstrip().rstrip(",")
    return text + "".join(_CLOSERS[b] for b in reversed(stack))


def extract_json_string(text: str) -> str:
    """The first complete JSON object/array in `text`, repaired if it was cut off."""
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if not starts:
        return text
    body = text[min(starts):]
    _, _, end = _open_brackets(body)
    if end != -1:
        return body[:end]
    return repair_truncated_json(body)


def load_json(response: str) -> Any:
    """Parse JSON from an LLM response. Raises JsonParseError."""
    if not response or not response.strip():
        raise JsonParseError("empty response")
    candidate = extract_json_string(strip_code_fences(response)).strip()
    # strict=False tolerates raw newlines/tabs inside strings
    for attempt in (candidate, _CONTROL_CHARS.sub(" ", candidate)):
        try:
            value, _ = _decoder.raw_decode(attempt)
            return value
        except json.JSONDecodeError as e:
            error = e
    raise JsonParseError(f"{error.msg} at char {error.pos}: {candidate[:200]!r}") from error


def parse_model(response: str, model_cls: Type[M], list_key: Optional[str] = None) -> ParseResult[M]:
    """Parse + validate an LLM response into `model_cls`.

    A bare JSON array is wrapped as {list_key: [...]} when list_key is given,
    since models asked for {"codes": [...]} often answer with just the list.
    """
    try:
        data = load_json(response)
    except JsonParseError as e:
        logger.debug(f"{model_cls.__name__}: unparseable response ({e})")
        return ParseResult.fail(f"invalid JSON: {e}")
    if isinstance(data, list) and list_key:
        data = {list_key: data}
    if not isinstance(data, dict):
        return ParseResult.fail(f"expected a JSON object, got {type(data).__name__}")
    try:
        return ParseResult.ok(model_cls.model_validate(data))
    except SchemaValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ()))
        return ParseResult.fail(
            f"schema mismatch for {model_cls.__name__}: {e.error_count()} error(s), "
            f"first at {loc or '<root>'}: {first.get('msg', '')}"
        )
