"""
approval_services.expiry_sweep -- Scheduled expiry and reminder job.

Responsibility:
    Expire pending approvals whose ``expires_at`` has passed, warn voters
    about approvals that will expire soon, and remind voters about stages
    that have waited too long.  Meant to be triggered externally (cron,
    worker); the vote path never checks expiry itself.

Architecture position:
    Services.  Collaborators: ApprovalRepository, NotificationService,
    Clock.

Invariants enforced:
    - One instance failing to save does not stop the sweep; it is logged
      and left for the next run.
    - Only approvers of the active stage who have not voted yet receive
      expiring warnings and reminders.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from approval_engines.state_machine import expire_instance, get_active_stage
from approval_kernel.domain.approval import ApprovalInstance, ApprovalStatus
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.ports import (
    ApprovalQueryFilters,
    ApprovalQueryOptions,
    ApprovalRepository,
    NotificationService,
    SortField,
    SortOrder,
)
from approval_kernel.logging_config import LogContext, get_logger
from approval_services.notifications import (
    build_approval_expired,
    build_approval_expiring,
    build_approval_reminder,
    dispatch,
    get_watchers,
)

logger = get_logger("services.expiry_sweep")

PAGE_SIZE = 200


def awaiting_voters(approval: ApprovalInstance) -> tuple[str, ...]:
    active = get_active_stage(approval)
    if active is None:
        return ()
    return tuple(p for p in active.approvers if active.vote_of(p) is None)


class ExpirySweep:
    def __init__(
        self,
        repository: ApprovalRepository,
        notification_service: NotificationService,
        clock: Clock | None = None,
    ) -> None:
        self._repository = repository
        self._notifications = notification_service
        self._clock = clock or SystemClock()

    def run(self, as_of: datetime | None = None) -> list[str]:
        """Expire every overdue pending approval; return the expired ids."""
        as_of = as_of or self._clock.now()
        found = self._repository.find_expired(as_of)
        if not found.success:
            logger.error("expiry_sweep_query_failed", extra={"error": found.error.message})
            return []

        expired: list[str] = []
        for approval in found.value:
            with LogContext.bind(approval_id=approval.approval_id):
                result = expire_instance(approval, now=as_of)
                if not result.success:
                    logger.warning(
                        "approval_expiry_skipped",
                        extra={"error": result.error.message},
                    )
                    continue
                saved = self._repository.save(result.value)
                if not saved.success:
                    logger.warning(
                        "approval_expiry_save_failed",
                        extra={"error": saved.error.message},
                    )
                    continue
                expired.append(approval.approval_id)
                dispatch(self._notifications, [
                    build_approval_expired(saved.value, get_watchers(saved.value)),
                ])

        logger.info(
            "expiry_sweep_completed",
            extra={"as_of": as_of, "candidates": len(found.value), "expired": len(expired)},
        )
        return expired

    def _pending(self, filters: ApprovalQueryFilters) -> list[ApprovalInstance]:
        items: list[ApprovalInstance] = []
        offset = 0
        while True:
            page = self._repository.find_many(filters, ApprovalQueryOptions(
                offset=offset,
                limit=PAGE_SIZE,
                sort_by=SortField.CREATED_AT,
                sort_order=SortOrder.ASC,
            ))
            if not page.success:
                logger.error("pending_query_failed", extra={"error": page.error.message})
                return items
            items.extend(page.value.items)
            if not page.value.has_more:
                return items
            offset += len(page.value.items)

    def warn_expiring(self, within: timedelta) -> list[str]:
        """Warn outstanding voters of approvals expiring within ``within``."""
        now = self._clock.now()
        candidates = self._pending(ApprovalQueryFilters(
            statuses=(ApprovalStatus.PENDING,),
            expiring_before=now + within,
        ))
        warned: list[str] = []
        for approval in candidates:
            if approval.expires_at is None or approval.expires_at <= now:
                continue
            voters = awaiting_voters(approval)
            if not voters:
                continue
            if dispatch(self._notifications, [build_approval_expiring(approval, voters)]):
                warned.append(approval.approval_id)
        return warned

    def send_reminders(self, idle_for: timedelta) -> list[str]:
        """Remind outstanding voters on stages active for at least ``idle_for``."""
        cutoff = self._clock.now() - idle_for
        candidates = self._pending(ApprovalQueryFilters(statuses=(ApprovalStatus.PENDING,)))
        reminded: list[str] = []
        for approval in candidates:
            active = get_active_stage(approval)
            if active is None or active.activated_at is None or active.activated_at > cutoff:
                continue
            voters = awaiting_voters(approval)
            if not voters:
                continue
            if dispatch(self._notifications, [
                build_approval_reminder(approval, active.name, voters),
            ]):
                reminded.append(approval.approval_id)
        return reminded
