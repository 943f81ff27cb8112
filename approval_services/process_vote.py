"""
approval_services.process_vote -- Vote processing use case.

Responsibility:
    The orchestration entry point for casting a vote: load the instance,
    gate the voter through the capability resolver, apply the vote via the
    state machine, persist, compute progress and notify watchers.

Architecture position:
    Services.  Calls the pure engines and the injected collaborators
    (repository, notification service, clock) sequentially:
    load -> save -> notify.

Invariants enforced:
    - Nothing is committed unless the repository save succeeds; a failed
      save discards the in-memory vote.
    - Authorization and state-machine failures are returned to the caller
      verbatim, never swallowed.
    - Notifications are best-effort: a delivery failure is logged and the
      vote still succeeds.
    - ``vote_recorded`` goes to every watcher except the voter;
      ``approval_complete`` goes to every watcher including the voter.

Failure modes (returned as EngineResult failures):
    - INVALID_DECISION: unknown decision string.
    - NOT_FOUND: no such approval (or no active stage).
    - NOT_AUTHORIZED: capability denied; the message is the denial reason.
    - NOT_ACTIVE_STAGE: propagated from the state machine.
    - SAVE_FAILED: repository error or version conflict.
"""

from __future__ import annotations

from dataclasses import dataclass

from approval_engines.capabilities import get_capabilities
from approval_engines.state_machine import get_active_stage, get_progress, record_vote
from approval_kernel.domain.approval import (
    ApprovalInstance,
    ApprovalStatus,
    Capability,
    StageProgress,
    Vote,
    VoteDecision,
)
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.ports import ApprovalRepository, NotificationService
from approval_kernel.domain.result import EngineResult, ErrorCode
from approval_kernel.exceptions import InvalidDecisionError
from approval_kernel.logging_config import LogContext, get_logger
from approval_services.notifications import (
    build_approval_complete,
    build_vote_recorded,
    dispatch,
    exclude,
    get_watchers,
)

logger = get_logger("services.process_vote")

DEFAULT_DENIAL = "Not authorized to vote"


@dataclass(frozen=True)
class ProcessVoteOutcome:
    """What a successful vote produced."""

    approval: ApprovalInstance
    is_complete: bool
    was_approved: bool
    was_rejected: bool
    progress: StageProgress
    vote: Vote | None = None


class ProcessVoteUseCase:
    """Record one principal's vote on one approval."""

    def __init__(
        self,
        repository: ApprovalRepository,
        notification_service: NotificationService,
        clock: Clock | None = None,
    ) -> None:
        self._repository = repository
        self._notifications = notification_service
        self._clock = clock or SystemClock()

    def process_vote(
        self,
        approval_id: str,
        voter_id: str,
        decision: VoteDecision | str,
        reason: str | None = None,
        action_url: str | None = None,
    ) -> EngineResult[ProcessVoteOutcome]:
        with LogContext.bind(approval_id=approval_id, actor_id=voter_id):
            return self._process(approval_id, voter_id, decision, reason, action_url)

    def _process(
        self,
        approval_id: str,
        voter_id: str,
        decision: VoteDecision | str,
        reason: str | None,
        action_url: str | None,
    ) -> EngineResult[ProcessVoteOutcome]:
        try:
            parsed = VoteDecision.parse(decision)
        except InvalidDecisionError as exc:
            return EngineResult.fail(ErrorCode.INVALID_DECISION, str(exc), decision=str(decision))

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

        capabilities = get_capabilities(approval, voter_id)
        if not capabilities.allows(parsed):
            denial = (
                capabilities.denial_for(parsed)
                or capabilities.denial_reasons.get(Capability.CAN_APPROVE)
                or capabilities.denial_reasons.get(Capability.CAN_REJECT)
                or DEFAULT_DENIAL
            )
            logger.info(
                "vote_denied",
                extra={"decision": parsed.value, "reason": denial},
            )
            return EngineResult.fail(
                ErrorCode.NOT_AUTHORIZED, denial, principal_id=voter_id, reason=denial,
            )

        active = get_active_stage(approval)
        voted = record_vote(approval, voter_id, parsed, reason, now=self._clock.now())
        if not voted.success:
            return EngineResult.from_error(voted.error)

        updated = voted.value
        if updated is approval:
            # Identical re-vote: nothing to persist or announce
            logger.info("vote_unchanged", extra={"decision": parsed.value})
            return EngineResult.ok(self._outcome(approval, active.sequence, voter_id))

        saved = self._repository.save(updated)
        if not saved.success:
            logger.error(
                "vote_save_failed",
                extra={"decision": parsed.value, "error": saved.error.message},
            )
            return EngineResult.fail(
                ErrorCode.SAVE_FAILED,
                saved.error.message,
                **dict(saved.error.details),
            )

        persisted = saved.value
        outcome = self._outcome(persisted, active.sequence, voter_id)

        logger.info(
            "vote_processed",
            extra={
                "decision": parsed.value,
                "stage": active.name,
                "status": persisted.status.value,
                "percent_complete": outcome.progress.percent_complete,
            },
        )

        self._notify(persisted, voter_id, outcome, action_url)
        return EngineResult.ok(outcome)

    def _outcome(
        self, approval: ApprovalInstance, stage_sequence: int, voter_id: str,
    ) -> ProcessVoteOutcome:
        progress = get_progress(approval)
        return ProcessVoteOutcome(
            approval=approval,
            is_complete=progress.is_complete,
            was_approved=approval.status == ApprovalStatus.APPROVED,
            was_rejected=approval.status == ApprovalStatus.REJECTED,
            progress=progress,
            vote=approval.stages[stage_sequence].vote_of(voter_id),
        )

    def _notify(
        self,
        approval: ApprovalInstance,
        voter_id: str,
        outcome: ProcessVoteOutcome,
        action_url: str | None,
    ) -> None:
        watchers = get_watchers(approval)
        if outcome.vote is not None:
            dispatch(self._notifications, [build_vote_recorded(
                approval, outcome.vote, outcome.progress,
                exclude(watchers, voter_id), action_url,
            )])
        if outcome.is_complete:
            dispatch(self._notifications, [
                build_approval_complete(approval, watchers, action_url),
            ])
