"""
Deskpilot Tool Result Formatting

Webhook payloads come in every shape: bare strings, arrays, envelopes
with ``data``/``result``/``payload`` wrappers, error objects that still
return HTTP 200. This module turns them into:

- model-facing text (format_response_for_llm), bounded in size
- a deterministic customer-facing sentence (basic_format_tool_result)
- a bounded value for the execution record (truncate_result_for_record)
"""

from __future__ import annotations

import json
from typing import Any

MAX_LLM_TEXT = 8000
MAX_LIST_ITEMS = 20
SMALL_DETAILS_CHARS = 500
MAX_IMPORTANT_FIELDS = 8
NESTED_FIELD_KEYS = 3

TRUNCATION_NOTICE = "\n\n... (response truncated due to length)"

MESSAGE_FIELDS = (
    "message", "msg", "description", "text",
    "statusMessage", "status_message", "responseMessage",
    "display_message", "displayMessage", "userMessage",
)

DATA_FIELDS = (
    "data", "result", "results", "payload", "body",
    "response", "content", "items", "records", "output",
)

META_FIELDS = ("success", "ok", "status", "statusCode", "timestamp", "_integrations")

ERROR_STATUSES = frozenset({"error", "failed", "failure", "fail"})

PRIORITY_FIELDS = (
    # identifiers
    "id", "orderId", "orderNumber", "order_id", "order_number",
    "bookingId", "booking_id", "confirmationNumber", "confirmation_number",
    "transactionId", "transaction_id", "reference", "ref",
    # status
    "status", "statusText", "status_text", "state", "orderStatus", "order_status",
    # scheduling
    "estimatedDelivery", "estimated_delivery", "deliveryTime", "delivery_time",
    "eta", "arrivalTime", "arrival_time", "date", "time", "datetime",
    # names
    "name", "customerName", "customer_name", "title", "description",
    # amounts
    "total", "amount", "price", "cost", "subtotal", "quantity", "count",
    # contact
    "phone", "email", "address",
    # delivery
    "driver", "courier", "deliveryPerson", "delivery_person",
)


def _dumps(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


def truncate_if_needed(text: str, max_length: int = MAX_LLM_TEXT) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length] + TRUNCATION_NOTICE


def _status_code(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def is_error_response(response: dict[str, Any]) -> bool:
    if response.get("error") or response.get("err") or response.get("errorMessage"):
        return True
    if any(response.get(flag) is False for flag in ("success", "ok", "succeeded")):
        return True
    if str(response.get("status") or "").lower() in ERROR_STATUSES:
        return True
    for field in ("statusCode", "code"):
        code = _status_code(response.get(field))
        if code is not None and code >= 400:
            return True
    return False


def extract_message(response: dict[str, Any]) -> str | None:
    for field in MESSAGE_FIELDS:
        value = response.get(field)
        if value and isinstance(value, str):
            return value
    return None


def extract_data(response: dict[str, Any]) -> Any:
    for field in DATA_FIELDS:
        if field in response and response[field] is not None:
            return response[field]
    cleaned = {k: v for k, v in response.items() if k not in META_FIELDS}
    return cleaned or response


def extract_important_fields(data: Any) -> dict[str, Any] | None:
    """Pick a handful of high-value fields out of a large payload."""
    if not isinstance(data, dict):
        return None

    extracted: dict[str, Any] = {}
    for field in PRIORITY_FIELDS:
        if len(extracted) >= MAX_IMPORTANT_FIELDS:
            break
        value = data.get(field)
        if value is None:
            continue
        if isinstance(value, dict):
            extracted[field] = dict(list(value.items())[:NESTED_FIELD_KEYS])
        elif isinstance(value, list):
            extracted[field] = value if len(value) <= 1 else f"[{len(value)} items]"
        else:
            extracted[field] = value

    return extracted or None


def format_response_for_llm(data: Any) -> str:
    """Render a webhook payload as text for the model's tool message."""
    if not data and not isinstance(data, list):
        return "No data returned from tool execution."

    if isinstance(data, str):
        return truncate_if_needed(data)

    if isinstance(data, list):
        if not data:
            return "No results found."
        text = _dumps(data[:MAX_LIST_ITEMS])
        if len(data) > MAX_LIST_ITEMS:
            text += f"\n... and {len(data) - MAX_LIST_ITEMS} more items (truncated)"
        return truncate_if_needed(text)

    if not isinstance(data, dict):
        return str(data)

    if is_error_response(data):
        message = (
            data.get("error")
            or data.get("errorMessage")
            or data.get("err")
            or data.get("message")
            or "Unknown error"
        )
        return f"Error: {message}"

    message = extract_message(data)
    payload = extract_data(data)

    if message:
        formatted = message
        if isinstance(payload, dict) and payload:
            details = _dumps(payload)
            if len(details) < SMALL_DETAILS_CHARS:
                formatted += "\n\nDetails:\n" + details
            else:
                important = extract_important_fields(payload)
                if important:
                    formatted += "\n\nKey Details:\n" + _dumps(important)
    elif payload is not None:
        formatted = payload if isinstance(payload, str) else _dumps(payload)
    else:
        formatted = _dumps(data)

    return truncate_if_needed(formatted)


def basic_format_tool_result(result: Any) -> str:
    """Deterministic customer-facing summary. Never exposes raw JSON."""
    if not result:
        return "The operation completed."
    if isinstance(result, str):
        return result
    if isinstance(result, dict):
        if result.get("message"):
            return str(result["message"])
        if result.get("error"):
            return f"There was an issue: {result['error']}"
    return "The operation completed successfully."


def truncate_result_for_record(
    result: Any,
    max_chars: int = 5000,
    preview_chars: int = 2000,
) -> Any:
    """Bound the stored result; oversized payloads become a marked preview."""
    serialized = json.dumps(result, ensure_ascii=False, default=str)
    if len(serialized) <= max_chars:
        return result
    return {"_truncated": True, "preview": serialized[:preview_chars] + "..."}
