"""
Deskpilot Assessment Parser

Extracts the structured self-assessment from a raw LLM reply.

The model is asked to append an ``<assessment>{...}</assessment>`` block
to every answer. Models routinely pollute that JSON with ``//`` comments,
drop the final closing brace, or forget the closing tag entirely, so the
parser repairs what it safely can and otherwise reports a ParseError.

It never raises: callers get ``AssessmentOk`` or ``AssessmentError`` and
degrade to treating the whole message as a plain conversational reply.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Union

from deskpilot.core.models import Assessment

_OPEN_TAG = re.compile(r"<assessment\s*>", re.IGNORECASE)
_CLOSE_TAG = re.compile(r"</assessment\s*>", re.IGNORECASE)
_REASONING_BLOCK = re.compile(r"<reasoning\s*>.*?(?:</reasoning\s*>|$)", re.IGNORECASE | re.DOTALL)
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")

_CLOSERS = {"{": "}", "[": "]"}


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name}")


# Rejects the NaN and Infinity literals
_DECODER = json.JSONDecoder(parse_constant=_reject_constant)


@dataclass(frozen=True)
class AssessmentOk:
    """Successful parse."""
    assessment: Assessment
    ok: bool = True


@dataclass(frozen=True)
class AssessmentError:
    """Failed parse. ``raw`` holds the extracted block, if any."""
    reason: str
    raw: str = ""
    ok: bool = False


ParseResult = Union[AssessmentOk, AssessmentError]


# ─── Block extraction ────────────────────────────────────────

def _locate_block(text: str) -> tuple[int, int, int] | None:
    """Return (block_start, body_start, block_end) of the assessment block."""
    opening = _OPEN_TAG.search(text)
    if opening is None:
        return None
    closing = _CLOSE_TAG.search(text, opening.end())
    if closing is None:
        return opening.start(), opening.end(), len(text)
    return opening.start(), opening.end(), closing.end()


def extract_assessment_block(text: str) -> str | None:
    """Return the raw body between the assessment delimiters, or None."""
    located = _locate_block(text or "")
    if located is None:
        return None
    _, body_start, block_end = located
    body = text[body_start:block_end]
    closing = _CLOSE_TAG.search(body)
    if closing is not None:
        body = body[:closing.start()]
    return body.strip()


def visible_response(text: str) -> str:
    """The reply with assessment and reasoning blocks removed."""
    text = text or ""
    located = _locate_block(text)
    if located is not None:
        block_start, _, block_end = located
        text = text[:block_start] + text[block_end:]
    text = _REASONING_BLOCK.sub("", text)
    return text.strip()


# ─── JSON repair ─────────────────────────────────────────────

def strip_json_comments(raw: str) -> str:
    """Remove // line and /* */ block comments outside string literals."""
    out: list[str] = []
    i = 0
    in_string = False
    length = len(raw)
    while i < length:
        ch = raw[i]
        if in_string:
            out.append(ch)
            if ch == "\\" and i + 1 < length:
                out.append(raw[i + 1])
                i += 2
                continue
            if ch == '"':
                in_string = False
            i += 1
            continue
        if ch == '"':
            in_string = True
            out.append(ch)
            i += 1
        elif raw.startswith("//", i):
            newline = raw.find("\n", i)
            i = length if newline == -1 else newline
        elif raw.startswith("/*", i):
            end = raw.find("*/", i + 2)
            i = length if end == -1 else end + 2
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def close_unbalanced(raw: str) -> str | None:
    """Append missing closing braces/brackets.

    Returns None when the text ends inside a string literal, since a
    truncated value cannot be repaired without guessing.
    """
    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in raw:
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
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in ("}", "]"):
            if not stack or stack[-1] != ch:
                return None
            stack.pop()
    if in_string:
        return None
    return raw + "".join(reversed(stack))


# ─── Field coercion ──────────────────────────────────────────

def _coerce_confidence(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(number):
        return 0
    # Clamp before rounding; 1e999 decodes to inf
    return int(round(max(0.0, min(10.0, number))))


def _coerce_optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in ("null", "none"):
        return None
    return text


def _coerce_str_list(value: Any) -> list[str] | None:
    if value is None or value is False:
        return None
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return None
    items = [str(v).strip() for v in value if str(v).strip()]
    return items or None


def build_assessment(data: dict[str, Any]) -> Assessment:
    """Normalize a decoded assessment object into an Assessment."""
    context = data.get("context_fetch")
    if context is None:
        context = data.get("needs_more_context")
    params = data.get("tool_params")
    return Assessment(
        confidence=_coerce_confidence(data.get("confidence", 0)),
        tool_call=_coerce_optional_str(data.get("tool_call")),
        tool_params=params if isinstance(params, dict) else {},
        ask_user=_coerce_optional_str(data.get("ask_user")),
        context_fetch=_coerce_str_list(context),
        is_destructive=bool(data.get("is_destructive", False)),
        needs_confirmation=bool(data.get("needs_confirmation", False)),
        missing_params=_coerce_str_list(data.get("missing_params")) or [],
        reasoning=str(data.get("reasoning") or ""),
    )


# ─── Public API ──────────────────────────────────────────────

def parse_assessment(text: str) -> ParseResult:
    """Parse the assessment block of an LLM reply."""
    raw = extract_assessment_block(text or "")
    if raw is None:
        return AssessmentError(reason="no assessment block")
    if not raw:
        return AssessmentError(reason="empty assessment block")

    cleaned = strip_json_comments(raw).strip()
    start = cleaned.find("{")
    if start == -1:
        return AssessmentError(reason="assessment block contains no JSON object", raw=raw)
    cleaned = cleaned[start:]

    repaired = close_unbalanced(cleaned)
    if repaired is None:
        return AssessmentError(reason="unterminated JSON in assessment block", raw=raw)
    repaired = _TRAILING_COMMA.sub(r"\1", repaired)

    try:
        data = _DECODER.raw_decode(repaired)[0]
    except json.JSONDecodeError as e:
        return AssessmentError(reason=f"invalid JSON: {e.msg}", raw=raw)
    except ValueError as e:
        return AssessmentError(reason=f"invalid JSON: {e}", raw=raw)

    if not isinstance(data, dict):
        return AssessmentError(reason="assessment is not a JSON object", raw=raw)

    try:
        return AssessmentOk(assessment=build_assessment(data))
    except (ValueError, TypeError, OverflowError) as e:
        return AssessmentError(reason=f"invalid assessment fields: {e}", raw=raw)


def split_response(text: str) -> tuple[str, ParseResult]:
    """Return the user-visible reply alongside the parse result."""
    return visible_response(text), parse_assessment(text)
