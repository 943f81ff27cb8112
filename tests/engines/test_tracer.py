"""
Tests for the engine tracer (``approval_engines.tracer``).

The tracer must fingerprint the same inputs identically whether they are
passed positionally or by keyword, and must report EngineResult outcomes.
"""

from datetime import datetime, UTC
from enum import Enum

from approval_engines.tracer import (
    TRACE_TYPE,
    _canonicalize,
    compute_input_fingerprint,
    traced_engine,
)
from approval_kernel.domain.approval import VotingRule
from approval_kernel.domain.result import EngineResult, ErrorCode


class Colour(str, Enum):
    RED = "red"


@traced_engine("test.engine", "2.1", fingerprint_fields=("a", "b"))
def _engine(a, b=None, *, c=None):
    if a == "fail":
        return EngineResult.fail(ErrorCode.INVALID_INPUT, "bad")
    return EngineResult.ok(a)


def _traces(captured_logs):
    return [r for r in captured_logs() if r["message"] == TRACE_TYPE]


class TestCanonicalize:
    """Tests for the stable input rendering."""

    def test_scalars_and_enums(self):
        assert _canonicalize(None) == "null"
        assert _canonicalize(True) == "true"
        assert _canonicalize(Colour.RED) == "red"
        assert _canonicalize(datetime(2024, 1, 1, tzinfo=UTC)) == "2024-01-01T00:00:00+00:00"

    def test_mapping_order_independent(self):
        assert _canonicalize({"b": 1, "a": 2}) == _canonicalize({"a": 2, "b": 1})

    def test_sets_sorted(self):
        assert _canonicalize({"b", "a"}) == "[a,b]"

    def test_dataclass(self):
        assert _canonicalize(VotingRule.threshold_rule(2)).startswith("VotingRule{")


class TestFingerprint:
    """Tests for compute_input_fingerprint."""

    def test_deterministic_and_truncated(self):
        fp = compute_input_fingerprint(("x",), {"x": 1})
        assert fp == compute_input_fingerprint(("x",), {"x": 1})
        assert len(fp) == 16

    def test_missing_field_is_null(self):
        assert compute_input_fingerprint(("x",), {}) == compute_input_fingerprint(("x",), {"x": None})


class TestTracedEngine:
    """Tests for the decorator's log record."""

    def test_trace_fields(self, captured_logs):
        result = _engine("v", 2)
        assert result.value == "v"
        trace = _traces(captured_logs)[-1]
        assert trace["trace_type"] == TRACE_TYPE
        assert trace["engine_name"] == "test.engine"
        assert trace["engine_version"] == "2.1"
        assert trace["result_success"] is True
        assert trace["duration_ms"] >= 0
        assert len(trace["input_fingerprint"]) == 16

    def test_positional_and_keyword_fingerprint_match(self, captured_logs):
        _engine("v", 2)
        _engine(a="v", b=2)
        first, second = _traces(captured_logs)[-2:]
        assert first["input_fingerprint"] == second["input_fingerprint"]

    def test_unlisted_arguments_do_not_change_fingerprint(self, captured_logs):
        _engine("v", 2, c="x")
        _engine("v", 2, c="y")
        first, second = _traces(captured_logs)[-2:]
        assert first["input_fingerprint"] == second["input_fingerprint"]

    def test_failure_code_recorded(self, captured_logs):
        _engine("fail")
        trace = _traces(captured_logs)[-1]
        assert trace["result_success"] is False
        assert trace["result_code"] == "INVALID_INPUT"
