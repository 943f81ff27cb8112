"""
Ports -- interfaces to the collaborators the approval kernel depends on.

Responsibility:
    Declares the repository, notification, policy and approver-resolution
    interfaces as ``typing.Protocol`` classes, plus the query and payload
    value types that cross them.  Concrete adapters live in
    ``approval_services``.

Architecture position:
    Kernel > Domain.  Zero I/O.  Mirrors the ``OrgHierarchyProvider``
    protocol style: structural typing, no registration.

Invariants enforced:
    - ``ApprovalRepository.save`` is a compare-and-swap on
      ``ApprovalInstance.version``; the stored copy (and the returned
      instance) carries ``version + 1``.
    - Repository results are ``EngineResult`` values; adapters never raise
      across this boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, Iterable, Mapping, Protocol, Sequence, TypeVar

from approval_kernel.domain.approval import (
    ApprovalInstance,
    ApprovalPolicy,
    ApprovalReference,
    ApprovalStatus,
    ApproverSelector,
)
from approval_kernel.domain.result import EngineResult

T = TypeVar("T")


# =========================================================================
# Query types
# =========================================================================


class SortField(str, Enum):
    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"
    STATUS = "status"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


DEFAULT_PAGE_SIZE = 50


@dataclass(frozen=True)
class ApprovalQueryFilters:
    """Conjunctive filters for ``find_many``; ``None`` means unconstrained."""

    statuses: tuple[ApprovalStatus, ...] | None = None
    initiator_id: str | None = None
    approver_id: str | None = None
    policy_id: str | None = None
    entity_type: str | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    expiring_before: datetime | None = None


@dataclass(frozen=True)
class ApprovalQueryOptions:
    offset: int = 0
    limit: int = DEFAULT_PAGE_SIZE
    sort_by: SortField = SortField.CREATED_AT
    sort_order: SortOrder = SortOrder.DESC

    def __post_init__(self) -> None:
        if self.offset < 0:
            raise ValueError(f"offset must be >= 0, got {self.offset}")
        if self.limit < 1:
            raise ValueError(f"limit must be >= 1, got {self.limit}")


@dataclass(frozen=True)
class PaginatedResult(Generic[T]):
    items: tuple[T, ...]
    total: int
    offset: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


# =========================================================================
# Notifications
# =========================================================================


class NotificationType(str, Enum):
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_REMINDER = "approval_reminder"
    VOTE_RECORDED = "vote_recorded"
    APPROVAL_COMPLETE = "approval_complete"
    APPROVAL_CANCELLED = "approval_cancelled"
    APPROVAL_EXPIRING = "approval_expiring"
    APPROVAL_EXPIRED = "approval_expired"


@dataclass(frozen=True)
class NotificationPayload:
    notification_type: NotificationType
    recipients: tuple[str, ...]
    approval_id: str
    subject: str
    body: str
    action_url: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


# =========================================================================
# Approver resolution
# =========================================================================


@dataclass(frozen=True)
class ApproverResolutionContext:
    """Facts a resolver may use to turn a selector into principal ids."""

    initiator_id: str
    entity_type: str
    metrics: Mapping[str, Any] = field(default_factory=dict)
    metadata: Mapping[str, Any] = field(default_factory=dict)


# =========================================================================
# Protocols
# =========================================================================


class ApprovalRepository(Protocol):
    """Persistence port for approval instances."""

    def save(self, instance: ApprovalInstance) -> EngineResult[ApprovalInstance]:
        """Compare-and-swap on ``version``; returns the stored copy."""
        ...

    def save_with_reference(
        self,
        instance: ApprovalInstance,
        reference: ApprovalReference,
    ) -> EngineResult[ApprovalInstance]:
        ...

    def find_by_id(self, approval_id: str) -> EngineResult[ApprovalInstance | None]:
        ...

    def find_by_reference(
        self, reference: ApprovalReference,
    ) -> EngineResult[ApprovalInstance | None]:
        ...

    def find_many(
        self,
        filters: ApprovalQueryFilters | None = None,
        options: ApprovalQueryOptions | None = None,
    ) -> EngineResult[PaginatedResult[ApprovalInstance]]:
        ...

    def find_pending_for_principal(
        self, principal_id: str,
    ) -> EngineResult[list[ApprovalInstance]]:
        """Pending instances whose active stage awaits this principal's vote."""
        ...

    def find_by_initiator(
        self, initiator_id: str,
    ) -> EngineResult[list[ApprovalInstance]]:
        ...

    def find_by_entity_type(
        self, entity_type: str,
    ) -> EngineResult[list[ApprovalInstance]]:
        ...

    def find_expired(self, as_of: datetime) -> EngineResult[list[ApprovalInstance]]:
        """Pending instances whose ``expires_at`` is at or before ``as_of``."""
        ...

    def delete(self, approval_id: str) -> EngineResult[bool]:
        ...

    def exists(self, approval_id: str) -> EngineResult[bool]:
        ...


class NotificationService(Protocol):
    def send(self, payload: NotificationPayload) -> None:
        ...

    def send_many(self, payloads: Iterable[NotificationPayload]) -> None:
        ...

    def is_opted_out(
        self, principal_id: str, notification_type: NotificationType,
    ) -> bool:
        ...


class PolicyProvider(Protocol):
    def get_all_policies(self) -> Sequence[ApprovalPolicy]:
        ...

    def get_policy_by_id(self, policy_id: str) -> ApprovalPolicy | None:
        ...

    def get_policies_for_entity_type(self, entity_type: str) -> Sequence[ApprovalPolicy]:
        """Policies applicable to ``entity_type``, in declaration order."""
        ...


class ApproverResolver(Protocol):
    def resolve(
        self,
        selector: ApproverSelector,
        context: ApproverResolutionContext,
    ) -> tuple[str, ...]:
        ...

    def matches(
        self,
        principal_id: str,
        selector: ApproverSelector,
        context: ApproverResolutionContext,
    ) -> bool:
        ...
