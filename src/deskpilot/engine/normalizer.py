"""
Deskpilot Tool Argument Normalization & Validation

Models emit arguments loosely: numbers as strings, "tomorrow" instead
of a date, a phone number in the email field. normalize_tool_arguments
repairs what it safely can using the tool's JSON schema;
validate_tool_arguments reports what is still wrong.
"""

from __future__ import annotations

import re
from datetime import date, timedelta
from typing import Any

from deskpilot.core.models import ClientTool
from deskpilot.exceptions import ValidationError
from deskpilot.logging import get_logger

logger = get_logger("deskpilot.engine.normalizer")

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DIGITS = re.compile(r"^\d+$")

_TRUE_STRINGS = frozenset({"true", "1", "yes"})
_FALSE_STRINGS = frozenset({"false", "0", "no"})


def _coerce_number(value: str, integer: bool) -> int | float | None:
    text = value.strip()
    try:
        return int(text) if integer else float(text)
    except ValueError:
        pass
    if integer:
        # "3.0" or "3 people": keep the leading integer part
        match = re.match(r"^[+-]?\d+", text)
        if match:
            return int(match.group())
    return None


def _one_year_before(today: date) -> date:
    try:
        return today.replace(year=today.year - 1)
    except ValueError:
        # Feb 29
        return today.replace(year=today.year - 1, day=28)


def _normalize_date(name: str, value: str, today: date) -> str:
    lowered = value.strip().lower()
    if lowered == "today":
        return today.isoformat()
    if lowered == "tomorrow":
        return (today + timedelta(days=1)).isoformat()
    if lowered == "yesterday":
        return (today - timedelta(days=1)).isoformat()
    if "date" in name.lower() and _ISO_DATE.match(value):
        try:
            parsed = date.fromisoformat(value)
        except ValueError:
            return value
        if parsed < _one_year_before(today):
            logger.warning("Date %s is too far in the past, correcting to today", value)
            return today.isoformat()
    return value


def normalize_tool_arguments(
    args: dict[str, Any] | None,
    tool: ClientTool | None,
    today: date | None = None,
) -> dict[str, Any]:
    """Return a coerced copy of ``args``. The input is never modified.

    Only parameters declared in the schema are touched; unknown keys
    pass through for validation to reject.
    """
    normalized = dict(args or {})
    properties = (tool.parameters_schema.get("properties") if tool else None) or {}
    if not properties:
        return normalized

    today = today or date.today()

    for name, value in (args or {}).items():
        param_schema = properties.get(name)
        if not isinstance(param_schema, dict) or not isinstance(value, str):
            continue
        param_type = param_schema.get("type")

        if param_type in ("number", "integer"):
            number = _coerce_number(value, integer=param_type == "integer")
            if number is not None:
                normalized[name] = number
                logger.debug("Coerced %s from %r to %r", name, value, number)
        elif param_type == "boolean":
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                normalized[name] = True
            elif lowered in _FALSE_STRINGS:
                normalized[name] = False
        elif param_type == "string":
            normalized[name] = _normalize_date(name, value, today)

    email = normalized.get("customerEmail")
    phone = normalized.get("customerPhone")
    if isinstance(email, str) and email and _DIGITS.match(email) and not phone:
        logger.warning("Phone number found in customerEmail, moving to customerPhone")
        normalized["customerPhone"] = email
        normalized["customerEmail"] = ""
    elif isinstance(phone, str) and phone and "@" in phone and not email:
        logger.warning("Email found in customerPhone, moving to customerEmail")
        normalized["customerEmail"] = phone
        normalized["customerPhone"] = ""

    return normalized


# ─── Validation ──────────────────────────────────────────────

def _type_error(name: str, expected: str, value: Any) -> str | None:
    if expected == "string" and not isinstance(value, str):
        return f"Parameter {name} should be a string"
    if expected in ("number", "integer") and (
        isinstance(value, bool) or not isinstance(value, (int, float))
    ):
        return f"Parameter {name} should be a number"
    if expected == "boolean" and not isinstance(value, bool):
        return f"Parameter {name} should be a boolean"
    if expected == "array" and not isinstance(value, list):
        return f"Parameter {name} should be an array"
    if expected == "object" and not isinstance(value, dict):
        return f"Parameter {name} should be an object"
    return None


def missing_required(tool: ClientTool, args: dict[str, Any] | None) -> list[str]:
    """Required parameters absent from ``args`` (empty strings and None count as absent)."""
    provided = args or {}
    return [
        p for p in tool.required_params
        if p not in provided or provided[p] is None or provided[p] == ""
    ]


def validate_tool_arguments(tool: ClientTool, args: dict[str, Any] | None) -> list[str]:
    """Return human-readable problems with ``args``; empty means valid."""
    schema = tool.parameters_schema or {}
    if not schema:
        return []

    errors = [f"Missing required parameter: {p}" for p in missing_required(tool, args)]

    properties = schema.get("properties")
    if isinstance(properties, dict):
        for name, value in (args or {}).items():
            param_schema = properties.get(name)
            if param_schema is None:
                errors.append(f"Unknown parameter: {name}")
                continue
            expected = param_schema.get("type") if isinstance(param_schema, dict) else None
            if expected and value is not None:
                error = _type_error(name, expected, value)
                if error:
                    errors.append(error)

    return errors


def check_tool_arguments(tool: ClientTool, args: dict[str, Any] | None) -> None:
    """Raise ValidationError if ``args`` do not satisfy the tool schema."""
    errors = validate_tool_arguments(tool, args)
    if errors:
        raise ValidationError(tool.tool_name, errors, missing=missing_required(tool, args))
