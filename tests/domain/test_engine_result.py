"""
Tests for tagged results and the typed exception mapping
(``approval_kernel.domain.result`` and ``approval_kernel.exceptions``).
"""

import pytest

from approval_kernel.domain.clock import DeterministicClock
from approval_kernel.domain.result import EngineResult, ErrorCode
from approval_kernel.exceptions import (
    ApprovalKernelError,
    ApprovalNotFoundError,
    NotAuthorizedError,
    SaveFailedError,
    error_for,
)
from datetime import datetime, timedelta, UTC


class TestEngineResult:
    """Tests for EngineResult construction and access."""

    def test_ok_carries_value(self):
        result = EngineResult.ok(42)
        assert result.success
        assert result.value == 42
        assert result.error is None
        assert result.code is None

    def test_fail_carries_code_message_details(self):
        result = EngineResult.fail(ErrorCode.NOT_FOUND, "missing", approval_id="apr-1")
        assert not result.success
        assert result.code == ErrorCode.NOT_FOUND
        assert result.error.message == "missing"
        assert result.error.details["approval_id"] == "apr-1"

    def test_value_on_failure_raises(self):
        result = EngineResult.fail(ErrorCode.SAVE_FAILED, "boom")
        with pytest.raises(ValueError, match="SAVE_FAILED"):
            result.value

    def test_success_with_error_rejected(self):
        failed = EngineResult.fail(ErrorCode.NOT_FOUND, "x")
        with pytest.raises(ValueError):
            EngineResult(success=True, error=failed.error)

    def test_from_error_propagates_verbatim(self):
        original = EngineResult.fail(ErrorCode.NOT_ACTIVE_STAGE, "not on stage", principal_id="bob")
        assert EngineResult.from_error(original.error).error is original.error


class TestUnwrap:
    """Tests for unwrap() and error_for()."""

    def test_unwrap_success(self):
        assert EngineResult.ok("v").unwrap() == "v"

    def test_unwrap_raises_typed_exception(self):
        result = EngineResult.fail(ErrorCode.NOT_FOUND, "Approval apr-1 not found", approval_id="apr-1")
        with pytest.raises(ApprovalNotFoundError) as exc_info:
            result.unwrap()
        assert str(exc_info.value) == "Approval apr-1 not found"
        assert exc_info.value.approval_id == "apr-1"
        assert exc_info.value.code == "NOT_FOUND"

    def test_error_for_not_authorized(self):
        failed = EngineResult.fail(
            ErrorCode.NOT_AUTHORIZED, "Not an approver on the active stage",
            principal_id="bob", reason="Not an approver on the active stage",
        )
        exc = error_for(failed.error)
        assert isinstance(exc, NotAuthorizedError)
        assert exc.reason == "Not an approver on the active stage"

    def test_save_failed_is_kernel_error(self):
        exc = error_for(EngineResult.fail(ErrorCode.SAVE_FAILED, "conflict").error)
        assert isinstance(exc, SaveFailedError)
        assert isinstance(exc, ApprovalKernelError)


class TestDeterministicClock:
    """Tests for the test clock used across the suite."""

    def test_fixed_until_advanced(self):
        clock = DeterministicClock()
        assert clock.now() == clock.now() == DeterministicClock.DEFAULT_TIME

    def test_advance_and_tick(self):
        clock = DeterministicClock()
        assert clock.advance(days=2) == DeterministicClock.DEFAULT_TIME + timedelta(days=2)
        assert clock.tick() == DeterministicClock.DEFAULT_TIME + timedelta(days=2, seconds=1)

    def test_rejects_naive_time(self):
        with pytest.raises(ValueError):
            DeterministicClock(datetime(2024, 1, 1))

    def test_set_time_resets_offset(self):
        clock = DeterministicClock()
        clock.advance(60)
        target = datetime(2025, 6, 1, tzinfo=UTC)
        clock.set_time(target)
        assert clock.now() == target
