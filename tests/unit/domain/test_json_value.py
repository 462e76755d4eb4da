import pytest

from sandlint.domain.cancellation import CancellationToken
from sandlint.domain.errors import SchemaMismatch
from sandlint.domain.json_value import JsonObject, JsonValues


class TestJsonValues:
    def test_canonical_sorts_keys_without_whitespace(self) -> None:
        assert JsonValues.canonical({"b": 1, "a": [True, None]}) == b'{"a":[true,null],"b":1}'

    def test_canonical_keeps_unicode(self) -> None:
        assert JsonValues.canonical({"s": "é"}) == '{"s":"é"}'.encode("utf-8")

    def test_is_json_value(self) -> None:
        assert JsonValues.is_json_value({"a": [1, 2.5, "x", None, {"b": False}]})
        assert not JsonValues.is_json_value({1: "x"})
        assert not JsonValues.is_json_value({"a": float("inf")})
        assert not JsonValues.is_json_value({"a": object()})


class TestJsonObject:
    def test_parse_rejects_invalid_utf8(self) -> None:
        with pytest.raises(SchemaMismatch, match="not valid UTF-8"):
            JsonObject.parse(b"\xff\xfe", "response")

    def test_parse_rejects_invalid_json(self) -> None:
        with pytest.raises(SchemaMismatch, match="invalid JSON"):
            JsonObject.parse(b"{not json", "response")

    def test_parse_requires_object(self) -> None:
        with pytest.raises(SchemaMismatch, match="expected object, got array"):
            JsonObject.parse(b"[]", "response")

    def test_typed_accessors_report_path(self) -> None:
        obj = JsonObject.parse(b'{"name": 3, "flag": true}', "manifest")
        with pytest.raises(SchemaMismatch, match=r"manifest\.name: expected string, got number"):
            obj.require_str("name")
        with pytest.raises(SchemaMismatch, match=r"manifest\.flag: expected integer, got boolean"):
            obj.require_int("flag")
        with pytest.raises(SchemaMismatch, match=r"manifest\.missing: missing required field"):
            obj.require_str("missing")

    def test_optional_accessors_use_defaults(self) -> None:
        obj = JsonObject.parse(b'{"severity": null}', "d")
        assert obj.optional_str("severity", "error") == "error"
        assert obj.optional_bool("fixable") is False
        assert obj.optional_list("node_types") == []
        assert obj.optional_child("fix") is None

    def test_items_of_wraps_elements(self) -> None:
        obj = JsonObject.parse(b'{"diagnostics": [{"message": "m"}, 1]}', "response")
        with pytest.raises(SchemaMismatch, match=r"response\.diagnostics\[1\]: expected object"):
            obj.items_of("diagnostics")


class TestCancellationToken:
    def test_cancel_records_first_reason(self) -> None:
        token = CancellationToken()
        assert not token.cancelled
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"

    def test_expired_deadline_cancels(self) -> None:
        token = CancellationToken.with_timeout(0)
        assert token.cancelled
        assert token.reason == "deadline exceeded"

    def test_wait_returns_early_when_cancelled(self) -> None:
        token = CancellationToken()
        token.cancel()
        assert token.wait(10.0)
