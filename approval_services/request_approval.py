"""
approval_services.request_approval -- Start an approval for a business entity.

Responsibility:
    Select the governing policy for a request's metrics, resolve each
    stage's approvers once, create the instance through the state machine,
    persist it (linked to its entity when a reference is given) and ask the
    first stage's approvers to vote.

Architecture position:
    Services.  Collaborators: ApprovalRepository, PolicyProvider,
    ApproverResolver, NotificationService, Clock.

Invariants enforced:
    - Approvers are resolved exactly once per stage, at request time; the
      resulting snapshot is what voting later checks against.
    - The policy matcher never invents a policy: with no match the request
      needs no approval unless a fallback policy id is configured.
    - A skippable policy with no stages approves the request outright and
      persists nothing.

Failure modes (returned as EngineResult failures):
    - POLICY_NOT_FOUND: the configured fallback policy does not exist.
    - INVALID_INPUT: propagated from instance creation.
    - SAVE_FAILED: repository error, reference already linked, or an
      approval with the same id exists.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from approval_engines.policy_matcher import is_auto_approved, match_policy
from approval_engines.state_machine import create_instance, get_active_stage
from approval_kernel.domain.approval import (
    ApprovalInstance,
    ApprovalPolicy,
    ApprovalReference,
)
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.ports import (
    ApprovalRepository,
    ApproverResolutionContext,
    ApproverResolver,
    NotificationService,
    PolicyProvider,
)
from approval_kernel.domain.result import EngineResult, ErrorCode
from approval_kernel.logging_config import LogContext, get_logger
from approval_services.notifications import build_approval_requested, dispatch

logger = get_logger("services.request_approval")


@dataclass(frozen=True)
class RequestApprovalOutcome:
    approval: ApprovalInstance | None
    approval_required: bool
    auto_approved: bool = False
    applied_policy: ApprovalPolicy | None = None


class RequestApprovalUseCase:
    """Create approval instances for incoming requests."""

    def __init__(
        self,
        repository: ApprovalRepository,
        policy_provider: PolicyProvider,
        approver_resolver: ApproverResolver,
        notification_service: NotificationService,
        clock: Clock | None = None,
        fallback_policy_id: str | None = None,
    ) -> None:
        self._repository = repository
        self._policies = policy_provider
        self._resolver = approver_resolver
        self._notifications = notification_service
        self._clock = clock or SystemClock()
        self._fallback_policy_id = fallback_policy_id

    def request_approval(
        self,
        approval_id: str,
        requester_id: str,
        entity_type: str,
        metrics: Mapping[str, Any],
        entity_reference: ApprovalReference | None = None,
        metadata: Mapping[str, Any] | None = None,
        expires_at: datetime | None = None,
        action_url: str | None = None,
    ) -> EngineResult[RequestApprovalOutcome]:
        with LogContext.bind(approval_id=approval_id, actor_id=requester_id):
            return self._request(
                approval_id, requester_id, entity_type, metrics,
                entity_reference, metadata, expires_at, action_url,
            )

    def _select_policy(
        self, entity_type: str, metrics: Mapping[str, Any],
    ) -> EngineResult[ApprovalPolicy | None]:
        candidates = self._policies.get_policies_for_entity_type(entity_type)
        policy = match_policy(candidates, metrics)
        if policy is not None or self._fallback_policy_id is None:
            return EngineResult.ok(policy)
        fallback = self._policies.get_policy_by_id(self._fallback_policy_id)
        if fallback is None:
            return EngineResult.fail(
                ErrorCode.POLICY_NOT_FOUND,
                f"Fallback policy {self._fallback_policy_id} not found",
                policy_id=self._fallback_policy_id,
            )
        logger.info("fallback_policy_applied", extra={"policy_id": fallback.policy_id})
        return EngineResult.ok(fallback)

    def _request(
        self,
        approval_id: str,
        requester_id: str,
        entity_type: str,
        metrics: Mapping[str, Any],
        entity_reference: ApprovalReference | None,
        metadata: Mapping[str, Any] | None,
        expires_at: datetime | None,
        action_url: str | None,
    ) -> EngineResult[RequestApprovalOutcome]:
        selected = self._select_policy(entity_type, metrics)
        if not selected.success:
            return EngineResult.from_error(selected.error)
        policy = selected.value

        if policy is None:
            logger.info("approval_not_required", extra={"entity_type": entity_type})
            return EngineResult.ok(RequestApprovalOutcome(approval=None, approval_required=False))

        if is_auto_approved(policy):
            logger.info(
                "approval_auto_approved",
                extra={"entity_type": entity_type, "policy_id": policy.policy_id},
            )
            return EngineResult.ok(RequestApprovalOutcome(
                approval=None,
                approval_required=False,
                auto_approved=True,
                applied_policy=policy,
            ))

        context = ApproverResolutionContext(
            initiator_id=requester_id,
            entity_type=entity_type,
            metrics=dict(metrics),
            metadata=dict(metadata or {}),
        )
        stage_approvers = [
            self._resolver.resolve(template.approver_selector, context)
            for template in policy.required_stages
        ]

        instance_metadata = dict(metadata or {})
        instance_metadata.setdefault("entity_type", entity_type)
        if entity_reference is not None:
            instance_metadata.setdefault("entity_id", entity_reference.entity_id)

        created = create_instance(
            approval_id,
            requester_id,
            policy,
            stage_approvers,
            now=self._clock.now(),
            expires_at=expires_at,
            metadata=instance_metadata,
        )
        if not created.success:
            logger.warning(
                "approval_creation_failed",
                extra={"policy_id": policy.policy_id, "error": created.error.message},
            )
            return EngineResult.from_error(created.error)

        if entity_reference is not None:
            saved = self._repository.save_with_reference(created.value, entity_reference)
        else:
            saved = self._repository.save(created.value)
        if not saved.success:
            return EngineResult.fail(
                ErrorCode.SAVE_FAILED, saved.error.message, **dict(saved.error.details),
            )

        approval = saved.value
        logger.info(
            "approval_requested",
            extra={
                "policy_id": policy.policy_id,
                "entity_type": entity_type,
                "stages": len(approval.stages),
                "status": approval.status.value,
            },
        )

        active = get_active_stage(approval)
        if active is not None:
            dispatch(self._notifications, [
                build_approval_requested(approval, active.name, active.approvers, action_url),
            ])

        return EngineResult.ok(RequestApprovalOutcome(
            approval=approval,
            approval_required=True,
            applied_policy=policy,
        ))
