"""Tests for the structured logging system (approval_kernel/logging_config.py)."""

import json
import logging
import threading
from datetime import datetime, UTC
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from approval_kernel.domain.approval import ApprovalStatus
from approval_kernel.exceptions import ConcurrentModificationError
from approval_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests, then restore the suite config."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG)


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_log(stream: StringIO) -> dict:
    """Parse the first JSON log line from a stream."""
    line = stream.getvalue().strip().split("\n")[0]
    return json.loads(line)


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


# ---------------------------------------------------------------------------
# StructuredFormatter tests
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    """Tests for JSON log output format."""

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "approval_kernel.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("vote_processed", extra={"stage": "Manager Review", "percent_complete": 50})

        record = _parse_log(stream)
        assert record["stage"] == "Manager Review"
        assert record["percent_complete"] == 50

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(correlation_id="abc-123", approval_id="apr-9")
        get_logger("test").info("test_msg")

        record = _parse_log(stream)
        assert record["correlation_id"] == "abc-123"
        assert record["approval_id"] == "apr-9"

    def test_bound_context_overrides_extra(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        with LogContext.bind(approval_id="apr-bound"):
            get_logger("test").info("clash", extra={"approval_id": "apr-extra"})

        assert _parse_log(stream)["approval_id"] == "apr-bound"

    def test_exception_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise ValueError("boom")
        except ValueError:
            get_logger("test").error("failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "ValueError"
        assert record["exc_message"] == "boom"
        assert "traceback" in record

    def test_kernel_exception_code_extracted(self):
        """Kernel exceptions carry a .code attribute and structured fields."""
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise ConcurrentModificationError("apr-1", 2, 3)
        except ConcurrentModificationError:
            get_logger("test").error("save_error", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "SAVE_FAILED"
        assert record["exc_type"] == "ConcurrentModificationError"
        assert record["exc_approval_id"] == "apr-1"
        assert record["exc_expected_version"] == 2
        assert record["exc_actual_version"] == 3

    def test_no_context_fields_when_empty(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("bare_message")

        record = _parse_log(stream)
        assert "correlation_id" not in record
        assert "approval_id" not in record

    def test_non_json_types_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        uid = uuid4()
        when = datetime(2024, 1, 1, tzinfo=UTC)
        get_logger("test").info("typed", extra={
            "uid": uid,
            "when": when,
            "amount": Decimal("10.50"),
            "status": ApprovalStatus.PENDING,
            "ids": frozenset({"b", "a"}),
        })

        record = _parse_log(stream)
        assert record["uid"] == str(uid)
        assert record["when"] == when.isoformat()
        assert record["amount"] == "10.50"
        assert record["status"] == "pending"
        assert record["ids"] == ["a", "b"]

    def test_valid_json_every_line(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        logs = _parse_all_logs(stream)
        # default level is INFO, so the debug line is dropped
        assert len(logs) == 2
        for record in logs:
            assert {"ts", "level", "logger", "message"} <= set(record)


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:
    """Tests for context propagation."""

    def test_set_and_get(self):
        LogContext.set(correlation_id="x", actor_id="y")
        assert LogContext.get_all() == {"correlation_id": "x", "actor_id": "y"}

    def test_clear(self):
        LogContext.set(correlation_id="x")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_context_manager(self):
        LogContext.set(approval_id="outer")
        with LogContext.bind(approval_id="inner"):
            assert LogContext.get_all()["approval_id"] == "inner"
        assert LogContext.get_all()["approval_id"] == "outer"

    def test_bind_restores_none(self):
        assert "actor_id" not in LogContext.get_all()
        with LogContext.bind(actor_id="temp"):
            assert LogContext.get_all()["actor_id"] == "temp"
        assert "actor_id" not in LogContext.get_all()

    def test_bind_rejects_unknown_fields(self):
        with pytest.raises(TypeError):
            LogContext.bind(event_id="nope")

    def test_all_fields(self):
        LogContext.set(
            correlation_id="c",
            approval_id="a",
            actor_id="p",
            policy_id="pol",
            trace_id="t",
        )
        ctx = LogContext.get_all()
        assert len(ctx) == 5
        assert ctx["policy_id"] == "pol"
        assert ctx["trace_id"] == "t"

    def test_set_rejects_unknown_fields(self):
        with pytest.raises(TypeError):
            LogContext.set(stage_index="0")

    def test_set_ignores_none(self):
        LogContext.set(actor_id="alice")
        LogContext.set(actor_id=None, policy_id="pol-1")
        assert LogContext.get_all() == {"actor_id": "alice", "policy_id": "pol-1"}

    def test_nested_bind_unwinds_in_order(self):
        with LogContext.bind(approval_id="apr-1", actor_id="alice"):
            with LogContext.bind(actor_id="bob"):
                assert LogContext.get_all() == {"approval_id": "apr-1", "actor_id": "bob"}
            assert LogContext.get_all()["actor_id"] == "alice"
        assert LogContext.get_all() == {}

    def test_bind_restores_after_exception(self):
        with pytest.raises(RuntimeError):
            with LogContext.bind(approval_id="apr-err"):
                raise RuntimeError("vote failed")
        assert "approval_id" not in LogContext.get_all()

    def test_threads_do_not_share_context(self):
        seen: dict[str, dict[str, str]] = {}

        def worker():
            seen["worker"] = LogContext.get_all()

        with LogContext.bind(approval_id="apr-main"):
            thread = threading.Thread(target=worker)
            thread.start()
            thread.join()

        assert seen["worker"] == {}


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    """Tests for initialization."""

    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)  # second call is no-op
        assert len(logging.getLogger("approval_kernel").handlers) == 1

    def test_get_logger_returns_child(self):
        assert get_logger("services.process_vote").name == "approval_kernel.services.process_vote"

    def test_logger_hierarchy(self):
        """Child loggers inherit the approval_kernel root config."""
        handler, stream = _make_handler()
        configure_logging(handler=handler, level=logging.DEBUG)
        get_logger("deep.nested.module").debug("hierarchy_test")

        record = _parse_log(stream)
        assert record["message"] == "hierarchy_test"
        assert record["logger"] == "approval_kernel.deep.nested.module"

    def test_reset_allows_reconfiguration(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        reset_logging()
        h2, stream = _make_handler()
        configure_logging(handler=h2)
        get_logger("test").info("after_reset")

        assert logging.getLogger("approval_kernel").handlers == [h2]
        assert _parse_log(stream)["message"] == "after_reset"
