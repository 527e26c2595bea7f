"""Tests for tool result formatting."""

import json

from deskpilot.engine.formatting import (
    MAX_LLM_TEXT,
    TRUNCATION_NOTICE,
    basic_format_tool_result,
    extract_data,
    extract_important_fields,
    extract_message,
    format_response_for_llm,
    is_error_response,
    truncate_if_needed,
    truncate_result_for_record,
)

# ─── Helpers ───────────────────────────────────────────────


class TestHelpers:
    def test_truncate(self):
        text = "x" * (MAX_LLM_TEXT + 10)
        assert truncate_if_needed(text).endswith(TRUNCATION_NOTICE)
        assert truncate_if_needed("short") == "short"

    def test_error_detection(self):
        assert is_error_response({"error": "boom"})
        assert is_error_response({"success": False})
        assert is_error_response({"status": "FAILED"})
        assert is_error_response({"statusCode": 404})
        assert is_error_response({"code": "500"})
        assert not is_error_response({"status": "ok", "statusCode": 200})

    def test_extract_message(self):
        assert extract_message({"statusMessage": "Done", "text": ""}) == "Done"
        assert extract_message({"data": {}}) is None

    def test_extract_data_wrapper(self):
        assert extract_data({"success": True, "data": {"id": 1}}) == {"id": 1}

    def test_extract_data_strips_meta(self):
        assert extract_data({"success": True, "orderId": "5", "_integrations": {}}) == {"orderId": "5"}

    def test_important_fields(self):
        fields = extract_important_fields({
            "orderId": "A1", "status": "shipped", "items": [1, 2, 3], "driver": {"name": "Avi", "phone": "1", "car": "x", "plate": "y"},
            "internal_notes": "skip",
        })
        assert fields["orderId"] == "A1"
        assert fields["status"] == "shipped"
        assert len(fields["driver"]) == 3
        assert "internal_notes" not in fields

    def test_important_fields_non_dict(self):
        assert extract_important_fields([1]) is None


# ─── format_response_for_llm ───────────────────────────────


class TestFormatResponseForLLM:
    def test_empty_values(self):
        assert format_response_for_llm(None) == "No data returned from tool execution."
        assert format_response_for_llm({}) == "No data returned from tool execution."
        assert format_response_for_llm([]) == "No results found."

    def test_string(self):
        assert format_response_for_llm("Order shipped") == "Order shipped"

    def test_list_truncated_to_twenty(self):
        text = format_response_for_llm(list(range(25)))
        assert "... and 5 more items (truncated)" in text

    def test_error_object(self):
        assert format_response_for_llm({"success": False, "message": "Order not found"}) == "Error: Order not found"

    def test_message_with_small_details(self):
        text = format_response_for_llm({"message": "Booked", "data": {"bookingId": "B7"}})
        assert text.startswith("Booked\n\nDetails:\n")
        assert '"bookingId": "B7"' in text

    def test_message_with_large_details(self):
        payload = {"orderId": "A1", "status": "shipped", "blob": "z" * 600}
        text = format_response_for_llm({"message": "Found it", "data": payload})
        assert text.startswith("Found it\n\nKey Details:\n")
        assert "blob" not in text

    def test_payload_without_message(self):
        assert json.loads(format_response_for_llm({"result": {"count": 3}})) == {"count": 3}

    def test_number(self):
        assert format_response_for_llm(42) == "42"


# ─── Customer-facing / record ──────────────────────────────


class TestBasicFormat:
    def test_message(self):
        assert basic_format_tool_result({"message": "Cancelled"}) == "Cancelled"

    def test_error(self):
        assert basic_format_tool_result({"error": "denied"}) == "There was an issue: denied"

    def test_string(self):
        assert basic_format_tool_result("All good") == "All good"

    def test_empty(self):
        assert basic_format_tool_result(None) == "The operation completed."

    def test_never_raw_json(self):
        assert basic_format_tool_result({"id": 1, "x": [1, 2]}) == "The operation completed successfully."


class TestTruncateForRecord:
    def test_small_kept(self):
        assert truncate_result_for_record({"a": 1}) == {"a": 1}

    def test_large_becomes_preview(self):
        result = truncate_result_for_record({"blob": "x" * 6000})
        assert result["_truncated"] is True
        assert len(result["preview"]) == 2003
        assert result["preview"].endswith("...")

    def test_custom_limits(self):
        result = truncate_result_for_record("y" * 50, max_chars=20, preview_chars=5)
        assert result == {"_truncated": True, "preview": '"yyyy...'}
