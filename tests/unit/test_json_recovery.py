"""
Unit tests for the recovering JSON parser.

Covers each recovery tier, normalization, and truncation at every offset.
"""

import json

import pytest

from taskmode.json_recovery import (
    COULD_NOT_RECOVER,
    RecoveryTier,
    extract_reply_fragment,
    normalize_text,
    recover_report,
    repair_structure,
    repair_structure_strict,
    robust_json_parse,
)
from taskmode.observer import RequestObserver


BALANCE_SHEET = {
    "replyText": "Balance Sheet ready",
    "sheets": [
        {
            "sheetName": "BS",
            "rows": [
                {"rowType": "header", "values": ["Particulars", "Amount"]},
                {"rowType": "data", "values": ["Cash", 5000]},
            ],
        }
    ],
}


class TestNormalize:
    """Tests for normalize_text."""

    def test_strips_fences(self):
        assert normalize_text('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_strips_zero_width(self):
        assert normalize_text('\ufeff{"a":\u200b 1}') == '{"a": 1}'

    def test_strips_keepalive(self):
        assert normalize_text('{"a": 1}<!-- KEEPALIVE -->') == '{"a": 1}'

    def test_removes_long_padding_outside_strings(self):
        text = '{"a":' + " " * 40 + '1}'
        assert normalize_text(text) == '{"a":1}'

    def test_keeps_padding_inside_strings(self):
        text = '{"replyText": "a' + " " * 12 + 'b"}'
        assert normalize_text(text) == text

    def test_keeps_fences_inside_strings(self):
        text = '```json\n{"replyText": "Run ```sql``` first"}\n```'
        assert normalize_text(text) == '{"replyText": "Run ```sql``` first"}'


class TestRecoverReport:
    """Tests for recover_report tiers."""

    @pytest.fixture
    def observer(self):
        return RequestObserver(name="test")

    def test_direct_round_trip(self):
        text = json.dumps(BALANCE_SHEET, indent=2)
        result = recover_report(text)
        assert result.tier == RecoveryTier.DIRECT
        assert result.document == BALANCE_SHEET

    def test_round_trip_with_markdown_in_reply(self):
        document = {"replyText": "Use ```code``` here", "sheets": []}
        result = recover_report(json.dumps(document))
        assert result.tier == RecoveryTier.DIRECT
        assert result.document == document

    def test_round_trip_with_deep_indent(self):
        document = {"replyText": "ok", "a": {"b": {"c": {"d": {"e": {"f": [1, 2]}}}}}}
        assert recover_report(json.dumps(document, indent=4)).document == document

    def test_fenced_document(self):
        text = "```json\n" + json.dumps(BALANCE_SHEET) + "\n```"
        result = recover_report(text)
        assert result.document == BALANCE_SHEET

    def test_prose_around_document(self, observer):
        text = "Here is your report:\n```json\n" + json.dumps(BALANCE_SHEET) + "\n```\nLet me know!"
        result = recover_report(text, observer=observer)
        assert result.tier == RecoveryTier.EXTRACTED
        assert result.document == BALANCE_SHEET
        assert observer.find("PARSE_EXTRACTED")

    def test_error_envelope_after_partial_body(self):
        envelope = {"error": True, "errorType": "STREAM_ERROR", "errorMessage": "Upstream closed",
                    "replyText": "Connection lost", "sheets": []}
        text = '{"replyText": "Partial", "sheets": [{"sheetName": "BS", "rows": [\n' + json.dumps(envelope, separators=(",", ":"))
        result = recover_report(text)
        assert result.tier == RecoveryTier.EXTRACTED
        assert result.document["errorMessage"] == "Upstream closed"

    def test_truncated_inside_reply_text(self, observer):
        text = '{"replyText": "The balance sheet shows tot'
        result = recover_report(text, observer=observer)
        assert result.tier in (RecoveryTier.REPAIRED, RecoveryTier.REPLY_ONLY)
        assert result.document["replyText"] == "The balance sheet shows tot"
        assert observer.warnings

    def test_repair_drops_trailing_comma(self):
        result = recover_report('{"replyText": "Done", "highlights": ["a", "b",')
        assert result.tier == RecoveryTier.REPAIRED
        assert result.document["highlights"] == ["a", "b"]

    def test_heuristic_order_falls_to_reply_only(self):
        text = '{"replyText": "Cut", "sheets": [{"sheetName": "BS", "rows": [{"values": ["Cash", 100'
        result = recover_report(text)
        assert result.tier == RecoveryTier.REPLY_ONLY
        assert result.degraded
        assert result.document == {
            "replyText": "Cut",
            "sheets": [],
            "highlights": [],
            "error": True,
            "errorMessage": result.document["errorMessage"],
        }

    def test_strict_repair_keeps_structure(self):
        text = '{"replyText": "Cut", "sheets": [{"sheetName": "BS", "rows": [{"values": ["Cash", 100'
        result = recover_report(text, strict=True)
        assert result.tier == RecoveryTier.REPAIRED
        assert result.document["sheets"][0]["rows"][0]["values"] == ["Cash", 100]

    def test_total_failure(self, observer):
        result = recover_report("Sorry, I cannot help with that.", observer=observer)
        assert result.tier == RecoveryTier.FAILED
        assert result.document is None
        assert result.error_message == COULD_NOT_RECOVER
        assert result.raw_text == "Sorry, I cannot help with that."
        assert observer.find("PARSE_FAILED")

    @pytest.mark.parametrize("text", [None, "", "   \n  "])
    def test_empty_input(self, text):
        assert recover_report(text).document is None

    def test_bare_empty_object_is_not_a_repair(self):
        assert recover_report('{"replyText": "').document is None

    def test_non_object_json_is_rejected(self):
        assert recover_report("[1, 2, 3]").document is None

    def test_every_prefix(self):
        document = dict(BALANCE_SHEET, highlights=["Cash is 5,000", 'Quote "q"'],
                        metadata={"reportTitle": "BS", "flag": True, "n": None})
        text = json.dumps(document)
        for end in range(len(text) + 1):
            result = recover_report(text[:end])
            if result.document is not None:
                reply = result.document.get("replyText")
                assert isinstance(reply, str) and reply.strip()
        assert recover_report(text).document == document

    def test_robust_json_parse_returns_document_only(self):
        assert robust_json_parse('{"replyText": "x"}') == {"replyText": "x"}
        assert robust_json_parse("nothing") is None


class TestRepairHelpers:
    """Tests for the structural repair helpers."""

    def test_closes_string_and_containers(self):
        assert repair_structure('{"a": ["b') == '{"a": ["b"]}'

    def test_drops_half_escape(self):
        assert json.loads(repair_structure('{"a": "x\\')) == {"a": "x"}

    def test_ignores_brackets_inside_strings(self):
        assert repair_structure('{"a": "[{"') == '{"a": "[{"}'

    def test_strict_closes_in_opening_order(self):
        assert repair_structure_strict('{"a": [{"b": [1') == '{"a": [{"b": [1]}]}'

    def test_strict_fills_dangling_value(self):
        assert json.loads(repair_structure_strict('{"a": 1, "b":')) == {"a": 1, "b": None}

    def test_reply_fragment_decodes_escapes(self):
        assert extract_reply_fragment('{"replyText": "a\\nb \\u20b9 5') == "a\nb ₹ 5"

    def test_reply_fragment_partial_unicode_escape(self):
        assert extract_reply_fragment('{"replyText": "cost \\u20') == "cost \\u20"
