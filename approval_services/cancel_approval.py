"""
approval_services.cancel_approval -- Initiator-driven cancellation.

Only the initiator of a pending approval may cancel it.  The active stage
is closed as skipped, the instance becomes ``cancelled`` and every other
watcher is told.
"""

from __future__ import annotations

from approval_engines.capabilities import get_capabilities
from approval_engines.state_machine import cancel_instance
from approval_kernel.domain.approval import ApprovalInstance, Capability
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.ports import ApprovalRepository, NotificationService
from approval_kernel.domain.result import EngineResult, ErrorCode
from approval_kernel.logging_config import LogContext, get_logger
from approval_services.notifications import (
    build_approval_cancelled,
    dispatch,
    exclude,
    get_watchers,
)

logger = get_logger("services.cancel_approval")


class CancelApprovalUseCase:
    def __init__(
        self,
        repository: ApprovalRepository,
        notification_service: NotificationService,
        clock: Clock | None = None,
    ) -> None:
        self._repository = repository
        self._notifications = notification_service
        self._clock = clock or SystemClock()

    def cancel(
        self,
        approval_id: str,
        canceller_id: str,
        reason: str | None = None,
        action_url: str | None = None,
    ) -> EngineResult[ApprovalInstance]:
        with LogContext.bind(approval_id=approval_id, actor_id=canceller_id):
            loaded = self._repository.find_by_id(approval_id)
            if not loaded.success:
                return EngineResult.from_error(loaded.error)
            approval = loaded.value
            if approval is None:
                return EngineResult.fail(
                    ErrorCode.NOT_FOUND,
                    f"Approval {approval_id} not found",
                    approval_id=approval_id,
                )

            capabilities = get_capabilities(approval, canceller_id)
            if not capabilities.can_cancel:
                denial = capabilities.denial_reasons[Capability.CAN_CANCEL]
                logger.info("cancel_denied", extra={"reason": denial})
                return EngineResult.fail(
                    ErrorCode.NOT_AUTHORIZED, denial,
                    principal_id=canceller_id, reason=denial,
                )

            cancelled = cancel_instance(approval, canceller_id, reason, now=self._clock.now())
            if not cancelled.success:
                return EngineResult.from_error(cancelled.error)

            saved = self._repository.save(cancelled.value)
            if not saved.success:
                return EngineResult.fail(
                    ErrorCode.SAVE_FAILED, saved.error.message, **dict(saved.error.details),
                )

            logger.info("approval_cancelled", extra={"reason": reason})
            persisted = saved.value
            dispatch(self._notifications, [build_approval_cancelled(
                persisted,
                exclude(get_watchers(persisted), canceller_id),
                canceller_id,
                reason,
                action_url,
            )])
            return EngineResult.ok(persisted)
