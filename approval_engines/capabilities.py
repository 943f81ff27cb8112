"""
approval_engines.capabilities -- Pure capability resolver.

Responsibility:
    Tell a principal what they may do on an approval instance right now,
    and why not for everything they may not do.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Vote capabilities require a pending instance, an active stage, and
      the principal in that stage's approver snapshot.
    - ``approve`` and ``reject`` are final for a principal on a stage;
      a ``request_changes`` vote may still be changed.
    - Only the initiator may cancel, and only while pending.
    - Every denied capability carries a reason.
"""

from __future__ import annotations

from approval_engines.state_machine import get_active_stage
from approval_kernel.domain.approval import (
    FINAL_DECISIONS,
    ApprovalCapabilities,
    ApprovalInstance,
    ApprovalStatus,
    Capability,
)

VOTE_CAPABILITIES = (
    Capability.CAN_APPROVE,
    Capability.CAN_REJECT,
    Capability.CAN_REQUEST_CHANGES,
)


def _vote_denial(instance: ApprovalInstance, principal_id: str) -> str | None:
    if instance.status != ApprovalStatus.PENDING:
        return f"Approval is not in a votable state (status: {instance.status.value})"
    active = get_active_stage(instance)
    if active is None:
        return "Approval has no active stage"
    if not active.has_approver(principal_id):
        return "Not an approver on the active stage"
    previous = active.vote_of(principal_id)
    if previous is not None and previous.decision in FINAL_DECISIONS:
        return f"Already voted to {previous.decision.value} on the active stage"
    return None


def _cancel_denial(instance: ApprovalInstance, principal_id: str) -> str | None:
    if instance.status != ApprovalStatus.PENDING:
        return f"Approval cannot be cancelled (status: {instance.status.value})"
    if principal_id != instance.initiator_id:
        return "Only the initiator can cancel this approval"
    return None


def get_capabilities(instance: ApprovalInstance, principal_id: str) -> ApprovalCapabilities:
    reasons: dict[Capability, str] = {}

    vote_denial = _vote_denial(instance, principal_id)
    if vote_denial is not None:
        for capability in VOTE_CAPABILITIES:
            reasons[capability] = vote_denial

    cancel_denial = _cancel_denial(instance, principal_id)
    if cancel_denial is not None:
        reasons[Capability.CAN_CANCEL] = cancel_denial

    can_vote = vote_denial is None
    return ApprovalCapabilities(
        can_approve=can_vote,
        can_reject=can_vote,
        can_request_changes=can_vote,
        can_cancel=cancel_denial is None,
        denial_reasons=reasons,
    )
