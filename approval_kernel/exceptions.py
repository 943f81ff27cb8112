"""
Typed Exception Hierarchy for the Approval Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Engines and use cases return ``EngineResult`` values instead of raising
across module boundaries.  The exceptions below exist for the two places
where raising is still the right call:

  1. Input parsing inside the kernel (``VoteDecision.parse`` raises
     ``InvalidDecisionError``; the state machine turns it into a failure).
  2. Callers that prefer exceptions over results (``EngineResult.unwrap()``
     raises the exception registered for the failure's code).

Every exception carries a CODE class attribute (machine-readable, API-safe)
and structured attributes (not just a message string).

Example:
    result = use_case.process_vote("apr-1", "vp-001", "approve")
    try:
        outcome = result.unwrap()
    except NotAuthorizedError as e:
        api_response(code=e.code, reason=e.reason)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ApprovalKernelError (base)
    |
    +-- ApprovalNotFoundError          NOT_FOUND
    +-- NotAuthorizedError             NOT_AUTHORIZED
    +-- NotActiveStageError            NOT_ACTIVE_STAGE
    +-- InvalidDecisionError           INVALID_DECISION
    +-- InvalidApprovalStateError      INVALID_STATE
    +-- InvalidInputError              INVALID_INPUT
    +-- PolicyNotFoundError            POLICY_NOT_FOUND
    |
    +-- PersistenceError
        +-- SaveFailedError            SAVE_FAILED
        |   +-- ConcurrentModificationError
        +-- DeleteFailedError          DELETE_FAILED

===============================================================================
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from approval_kernel.domain.result import EngineError


class ApprovalKernelError(Exception):
    """
    Base exception for all approval kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "APPROVAL_KERNEL_ERROR"


class ApprovalNotFoundError(ApprovalKernelError):
    """Approval instance (or its active stage) does not exist."""

    code: str = "NOT_FOUND"

    def __init__(self, approval_id: str, message: str | None = None):
        self.approval_id = approval_id
        super().__init__(message or f"Approval {approval_id} not found")


class NotAuthorizedError(ApprovalKernelError):
    """Principal lacks the capability for the requested action."""

    code: str = "NOT_AUTHORIZED"

    def __init__(self, principal_id: str, reason: str):
        self.principal_id = principal_id
        self.reason = reason
        super().__init__(reason)


class NotActiveStageError(ApprovalKernelError):
    """Voter is not an approver on the active stage."""

    code: str = "NOT_ACTIVE_STAGE"

    def __init__(self, principal_id: str, stage_name: str | None = None):
        self.principal_id = principal_id
        self.stage_name = stage_name
        super().__init__(
            f"Principal {principal_id} is not an approver on the active stage"
            + (f" '{stage_name}'" if stage_name else "")
        )


class InvalidDecisionError(ApprovalKernelError):
    """Vote decision outside the known set."""

    code: str = "INVALID_DECISION"

    def __init__(self, decision: Any):
        self.decision = decision
        super().__init__(f"Invalid vote decision: {decision!r}")


class InvalidApprovalStateError(ApprovalKernelError):
    """Operation not allowed in the approval's current status."""

    code: str = "INVALID_STATE"

    def __init__(self, approval_id: str, status: str, message: str | None = None):
        self.approval_id = approval_id
        self.status = status
        super().__init__(
            message or f"Approval {approval_id} cannot change from status '{status}'"
        )


class InvalidInputError(ApprovalKernelError):
    """Structurally invalid input (e.g. a stage nobody can approve)."""

    code: str = "INVALID_INPUT"


class PolicyNotFoundError(ApprovalKernelError):
    """Referenced policy is not known to the policy provider."""

    code: str = "POLICY_NOT_FOUND"

    def __init__(self, policy_id: str):
        self.policy_id = policy_id
        super().__init__(f"Policy {policy_id} not found")


# Persistence


class PersistenceError(ApprovalKernelError):
    """Base exception for repository I/O failures."""

    code: str = "PERSISTENCE_ERROR"


class SaveFailedError(PersistenceError):
    """Repository could not persist an approval instance."""

    code: str = "SAVE_FAILED"


class ConcurrentModificationError(SaveFailedError):
    """
    Stored version differs from the version the caller loaded.

    Two writers read the same instance and the other one saved first.
    The loser must reload and re-apply its change.
    """

    def __init__(self, approval_id: str, expected_version: int, actual_version: int):
        self.approval_id = approval_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Approval {approval_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


class DeleteFailedError(PersistenceError):
    """Repository could not delete an approval instance."""

    code: str = "DELETE_FAILED"


_EXCEPTIONS_BY_CODE: dict[str, type[ApprovalKernelError]] = {
    ApprovalNotFoundError.code: ApprovalNotFoundError,
    NotAuthorizedError.code: NotAuthorizedError,
    NotActiveStageError.code: NotActiveStageError,
    InvalidDecisionError.code: InvalidDecisionError,
    InvalidApprovalStateError.code: InvalidApprovalStateError,
    InvalidInputError.code: InvalidInputError,
    PolicyNotFoundError.code: PolicyNotFoundError,
    SaveFailedError.code: SaveFailedError,
    DeleteFailedError.code: DeleteFailedError,
}


def error_for(error: EngineError) -> ApprovalKernelError:
    """Build the typed exception matching a failed result's code.

    The message of the result is kept verbatim; structured details are
    attached as attributes.  Unknown codes map to the base class with the
    code copied onto the instance.
    """
    code = getattr(error.code, "value", error.code)
    exc_type = _EXCEPTIONS_BY_CODE.get(code)
    exc: ApprovalKernelError
    if exc_type is None:
        exc = ApprovalKernelError(error.message)
        exc.code = code
    else:
        # Bypass per-class __init__ signatures; the message is already built.
        exc = exc_type.__new__(exc_type)
        Exception.__init__(exc, error.message)
    for key, value in error.details.items():
        setattr(exc, key, value)
    return exc
