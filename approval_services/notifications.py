"""
approval_services.notifications -- Notification payload builders and dispatch.

Responsibility:
    Build the human-readable notification payloads for approval events,
    derive the watcher set of an instance, and dispatch payloads
    best-effort through a ``NotificationService``.  Also ships two
    in-process notification services: ``NullNotificationService`` and
    ``RecordingNotificationService``.

Architecture position:
    Services.  Imports kernel domain types only.

Invariants enforced:
    - Watchers are the initiator followed by every approver across every
      stage, deduplicated in first-seen order.
    - Opted-out recipients are dropped before sending; a payload left with
      no recipients is not sent.
    - Dispatch never raises: delivery failures are logged and swallowed so
      a persisted state change is never reported as failed.
    - Recording services keep their state on the instance, never at
      module level, so tests can run in parallel.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import replace

from approval_kernel.domain.approval import (
    ApprovalInstance,
    ApprovalStatus,
    StageProgress,
    Vote,
    VoteDecision,
)
from approval_kernel.domain.ports import (
    NotificationPayload,
    NotificationService,
    NotificationType,
)
from approval_kernel.logging_config import get_logger

logger = get_logger("services.notifications")

_DECISION_TEXT = {
    VoteDecision.APPROVE: "approved",
    VoteDecision.REJECT: "rejected",
    VoteDecision.REQUEST_CHANGES: "requested changes on",
}

_STATUS_TEXT = {
    ApprovalStatus.APPROVED: "has been approved",
    ApprovalStatus.REJECTED: "has been rejected",
}


# =========================================================================
# Recipients
# =========================================================================


def get_watchers(instance: ApprovalInstance) -> tuple[str, ...]:
    """Initiator plus every approver across every stage, deduplicated."""
    return tuple(dict.fromkeys((instance.initiator_id, *instance.all_approvers())))


def exclude(recipients: Iterable[str], *principal_ids: str) -> tuple[str, ...]:
    excluded = set(principal_ids)
    return tuple(r for r in recipients if r not in excluded)


# =========================================================================
# Builders
# =========================================================================


def build_approval_requested(
    instance: ApprovalInstance,
    stage_name: str,
    approvers: Iterable[str],
    action_url: str | None = None,
) -> NotificationPayload:
    return NotificationPayload(
        notification_type=NotificationType.APPROVAL_REQUESTED,
        recipients=tuple(approvers),
        approval_id=instance.approval_id,
        subject=f"Approval requested: {stage_name}",
        body=f'Your approval is needed for stage "{stage_name}".',
        action_url=action_url,
        metadata={"requested_by": instance.initiator_id, "stage_name": stage_name},
    )


def build_approval_reminder(
    instance: ApprovalInstance,
    stage_name: str,
    approvers: Iterable[str],
    action_url: str | None = None,
) -> NotificationPayload:
    return NotificationPayload(
        notification_type=NotificationType.APPROVAL_REMINDER,
        recipients=tuple(approvers),
        approval_id=instance.approval_id,
        subject=f"Reminder: approval pending for {stage_name}",
        body=f'Your approval is still needed for stage "{stage_name}".',
        action_url=action_url,
        metadata={"stage_name": stage_name},
    )


def build_vote_recorded(
    instance: ApprovalInstance,
    vote: Vote,
    progress: StageProgress,
    watchers: Iterable[str],
    action_url: str | None = None,
) -> NotificationPayload:
    return NotificationPayload(
        notification_type=NotificationType.VOTE_RECORDED,
        recipients=tuple(watchers),
        approval_id=instance.approval_id,
        subject="Vote recorded on approval",
        body=f"{vote.principal_id} {_DECISION_TEXT[vote.decision]} the approval.",
        action_url=action_url,
        metadata={
            "principal_id": vote.principal_id,
            "decision": vote.decision.value,
            "completed_stages": progress.completed_stages,
            "total_stages": progress.total_stages,
        },
    )


def build_approval_complete(
    instance: ApprovalInstance,
    watchers: Iterable[str],
    action_url: str | None = None,
) -> NotificationPayload:
    status = instance.status.value
    status_text = _STATUS_TEXT.get(instance.status, f"is now {status}")
    return NotificationPayload(
        notification_type=NotificationType.APPROVAL_COMPLETE,
        recipients=tuple(watchers),
        approval_id=instance.approval_id,
        subject=f"Approval {status}",
        body=f"The approval {status_text}.",
        action_url=action_url,
        metadata={"final_status": status},
    )


def build_approval_cancelled(
    instance: ApprovalInstance,
    watchers: Iterable[str],
    cancelled_by: str,
    reason: str | None = None,
    action_url: str | None = None,
) -> NotificationPayload:
    body = f"The approval was cancelled by {cancelled_by}."
    if reason:
        body += f" Reason: {reason}"
    return NotificationPayload(
        notification_type=NotificationType.APPROVAL_CANCELLED,
        recipients=tuple(watchers),
        approval_id=instance.approval_id,
        subject="Approval cancelled",
        body=body,
        action_url=action_url,
        metadata={"cancelled_by": cancelled_by, "reason": reason},
    )


def build_approval_expiring(
    instance: ApprovalInstance,
    approvers: Iterable[str],
    action_url: str | None = None,
) -> NotificationPayload:
    expires = instance.expires_at.isoformat() if instance.expires_at else "soon"
    return NotificationPayload(
        notification_type=NotificationType.APPROVAL_EXPIRING,
        recipients=tuple(approvers),
        approval_id=instance.approval_id,
        subject="Approval expiring soon",
        body=f"This approval expires at {expires} and still needs your vote.",
        action_url=action_url,
        metadata={"expires_at": expires},
    )


def build_approval_expired(
    instance: ApprovalInstance,
    watchers: Iterable[str],
    action_url: str | None = None,
) -> NotificationPayload:
    return NotificationPayload(
        notification_type=NotificationType.APPROVAL_EXPIRED,
        recipients=tuple(watchers),
        approval_id=instance.approval_id,
        subject="Approval expired",
        body="The approval expired before all stages were completed.",
        action_url=action_url,
    )


# =========================================================================
# Dispatch
# =========================================================================


def dispatch(
    service: NotificationService,
    payloads: Iterable[NotificationPayload],
) -> list[NotificationPayload]:
    """Filter opt-outs and send; never raises.

    Returns the payloads that were handed to the service (after filtering).
    An empty list means nothing was sent or the send failed.
    """
    try:
        to_send: list[NotificationPayload] = []
        for payload in payloads:
            recipients = tuple(
                r for r in payload.recipients
                if not service.is_opted_out(r, payload.notification_type)
            )
            if not recipients:
                continue
            if recipients != payload.recipients:
                payload = _with_recipients(payload, recipients)
            to_send.append(payload)
        if to_send:
            service.send_many(to_send)
    except Exception as e:  # noqa: BLE001
        logger.warning(
            "notification_failed",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return []
    return to_send


def _with_recipients(
    payload: NotificationPayload, recipients: tuple[str, ...],
) -> NotificationPayload:
    return replace(payload, recipients=recipients)


# =========================================================================
# In-process notification services
# =========================================================================


class NullNotificationService:
    """Discards every notification."""

    def send(self, payload: NotificationPayload) -> None:
        return None

    def send_many(self, payloads: Iterable[NotificationPayload]) -> None:
        return None

    def is_opted_out(self, principal_id: str, notification_type: NotificationType) -> bool:
        return False


class RecordingNotificationService:
    """Collects sent payloads on the instance.

    Args:
        opt_outs: principal id -> notification types that principal
            refuses.  An empty set of types opts out of everything.
        fail_with: exception raised by every send, for failure-path tests.
    """

    def __init__(
        self,
        opt_outs: Mapping[str, Iterable[NotificationType]] | None = None,
        fail_with: Exception | None = None,
    ) -> None:
        self.sent: list[NotificationPayload] = []
        self._opt_outs: dict[str, frozenset[NotificationType]] = {
            k: frozenset(v) for k, v in (opt_outs or {}).items()
        }
        self._fail_with = fail_with

    def send(self, payload: NotificationPayload) -> None:
        if self._fail_with is not None:
            raise self._fail_with
        self.sent.append(payload)

    def send_many(self, payloads: Iterable[NotificationPayload]) -> None:
        for payload in payloads:
            self.send(payload)

    def is_opted_out(self, principal_id: str, notification_type: NotificationType) -> bool:
        types = self._opt_outs.get(principal_id)
        if types is None:
            return False
        return not types or notification_type in types

    def of_type(self, notification_type: NotificationType) -> list[NotificationPayload]:
        return [p for p in self.sent if p.notification_type == notification_type]

    def received_by(self, principal_id: str) -> list[NotificationPayload]:
        return [p for p in self.sent if principal_id in p.recipients]

    def clear(self) -> None:
        self.sent.clear()
