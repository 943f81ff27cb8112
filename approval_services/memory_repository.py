"""
approval_services.memory_repository -- In-memory ApprovalRepository.

Responsibility:
    Dict-backed implementation of the ``ApprovalRepository`` port for
    tests, demos and single-process tools.

Architecture position:
    Services > adapters.  Holds state on the instance only; two
    repositories never share data.

Invariants enforced:
    - Compare-and-swap on ``version``: a save succeeds only when the stored
      version equals the instance's version (or nothing is stored and the
      instance is at version 0).  The stored and returned copy is
      ``version + 1``.
    - A reference (``entity_type:entity_id``) points at one approval.
    - Writes are serialized by a lock, so concurrent read-modify-write
      cycles on the same approval cannot both succeed.  Reads copy the
      stored values under the same lock before filtering.

Failure modes:
    - SAVE_FAILED on version conflict or when a failure is injected with
      ``fail_next_save``.
    - DELETE_FAILED when a failure is injected with ``fail_next_delete``.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime

from approval_kernel.domain.approval import (
    ApprovalInstance,
    ApprovalReference,
    ApprovalStatus,
    StageStatus,
)
from approval_kernel.domain.ports import (
    ApprovalQueryFilters,
    ApprovalQueryOptions,
    PaginatedResult,
    SortField,
    SortOrder,
)
from approval_kernel.domain.result import EngineResult, ErrorCode
from approval_kernel.logging_config import get_logger

logger = get_logger("services.memory_repository")


def matches_filters(instance: ApprovalInstance, filters: ApprovalQueryFilters) -> bool:
    """True when ``instance`` satisfies every set filter."""
    if filters.statuses is not None and instance.status not in filters.statuses:
        return False
    if filters.initiator_id is not None and instance.initiator_id != filters.initiator_id:
        return False
    if filters.approver_id is not None and filters.approver_id not in instance.all_approvers():
        return False
    if filters.policy_id is not None and instance.policy_id != filters.policy_id:
        return False
    if filters.entity_type is not None and instance.metadata.get("entity_type") != filters.entity_type:
        return False
    if filters.created_after is not None and instance.created_at < filters.created_after:
        return False
    if filters.created_before is not None and instance.created_at > filters.created_before:
        return False
    if filters.expiring_before is not None:
        if instance.expires_at is None or instance.expires_at > filters.expiring_before:
            return False
    return True


def awaits_vote_from(instance: ApprovalInstance, principal_id: str) -> bool:
    """Pending, and the active stage still needs this principal's vote."""
    if instance.status != ApprovalStatus.PENDING:
        return False
    for stage in instance.stages:
        if stage.status == StageStatus.ACTIVE:
            return stage.has_approver(principal_id) and stage.vote_of(principal_id) is None
    return False


def _sort_key(field: SortField):
    if field == SortField.UPDATED_AT:
        return lambda i: (i.updated_at, i.approval_id)
    if field == SortField.STATUS:
        return lambda i: (i.status.value, i.approval_id)
    return lambda i: (i.created_at, i.approval_id)


class InMemoryApprovalRepository:
    """Constructor-scoped, thread-safe in-memory approval store."""

    def __init__(self) -> None:
        self._instances: dict[str, ApprovalInstance] = {}
        self._references: dict[str, str] = {}
        self._lock = threading.RLock()
        self._fail_saves = 0
        self._fail_deletes = 0

    # -- test hooks ------------------------------------------------------

    def fail_next_save(self, times: int = 1) -> None:
        self._fail_saves = times

    def fail_next_delete(self, times: int = 1) -> None:
        self._fail_deletes = times

    # -- writes ----------------------------------------------------------

    def save(self, instance: ApprovalInstance) -> EngineResult[ApprovalInstance]:
        with self._lock:
            return self._save_locked(instance)

    def save_with_reference(
        self,
        instance: ApprovalInstance,
        reference: ApprovalReference,
    ) -> EngineResult[ApprovalInstance]:
        with self._lock:
            owner = self._references.get(reference.key)
            if owner is not None and owner != instance.approval_id:
                return EngineResult.fail(
                    ErrorCode.SAVE_FAILED,
                    f"Reference {reference.key} already belongs to approval {owner}",
                    reference=reference.key,
                )
            result = self._save_locked(instance)
            if result.success:
                self._references[reference.key] = instance.approval_id
            return result

    def _save_locked(self, instance: ApprovalInstance) -> EngineResult[ApprovalInstance]:
        if self._fail_saves > 0:
            self._fail_saves -= 1
            return EngineResult.fail(
                ErrorCode.SAVE_FAILED,
                f"Failed to save approval {instance.approval_id}",
                approval_id=instance.approval_id,
            )
        stored = self._instances.get(instance.approval_id)
        stored_version = stored.version if stored is not None else 0
        if stored_version != instance.version:
            logger.warning(
                "approval_save_conflict",
                extra={
                    "approval_id": instance.approval_id,
                    "expected_version": instance.version,
                    "actual_version": stored_version,
                },
            )
            return EngineResult.fail(
                ErrorCode.SAVE_FAILED,
                f"Approval {instance.approval_id} was modified concurrently",
                approval_id=instance.approval_id,
                expected_version=instance.version,
                actual_version=stored_version,
            )
        saved = replace(instance, version=instance.version + 1)
        self._instances[saved.approval_id] = saved
        return EngineResult.ok(saved)

    def delete(self, approval_id: str) -> EngineResult[bool]:
        with self._lock:
            if self._fail_deletes > 0:
                self._fail_deletes -= 1
                return EngineResult.fail(
                    ErrorCode.DELETE_FAILED,
                    f"Failed to delete approval {approval_id}",
                    approval_id=approval_id,
                )
            removed = self._instances.pop(approval_id, None)
            for key in [k for k, v in self._references.items() if v == approval_id]:
                del self._references[key]
            return EngineResult.ok(removed is not None)

    # -- reads -----------------------------------------------------------

    def _snapshot(self) -> list[ApprovalInstance]:
        with self._lock:
            return list(self._instances.values())

    def find_by_id(self, approval_id: str) -> EngineResult[ApprovalInstance | None]:
        with self._lock:
            return EngineResult.ok(self._instances.get(approval_id))

    def find_by_reference(
        self, reference: ApprovalReference,
    ) -> EngineResult[ApprovalInstance | None]:
        with self._lock:
            approval_id = self._references.get(reference.key)
            if approval_id is None:
                return EngineResult.ok(None)
            return EngineResult.ok(self._instances.get(approval_id))

    def find_many(
        self,
        filters: ApprovalQueryFilters | None = None,
        options: ApprovalQueryOptions | None = None,
    ) -> EngineResult[PaginatedResult[ApprovalInstance]]:
        filters = filters or ApprovalQueryFilters()
        options = options or ApprovalQueryOptions()
        matching = [i for i in self._snapshot() if matches_filters(i, filters)]
        matching.sort(
            key=_sort_key(options.sort_by),
            reverse=options.sort_order == SortOrder.DESC,
        )
        page = matching[options.offset:options.offset + options.limit]
        return EngineResult.ok(PaginatedResult(
            items=tuple(page),
            total=len(matching),
            offset=options.offset,
            limit=options.limit,
        ))

    def find_pending_for_principal(self, principal_id: str) -> EngineResult[list[ApprovalInstance]]:
        return EngineResult.ok(sorted(
            (i for i in self._snapshot() if awaits_vote_from(i, principal_id)),
            key=lambda i: i.created_at,
        ))

    def find_by_initiator(self, initiator_id: str) -> EngineResult[list[ApprovalInstance]]:
        return EngineResult.ok(sorted(
            (i for i in self._snapshot() if i.initiator_id == initiator_id),
            key=lambda i: i.created_at,
        ))

    def find_by_entity_type(self, entity_type: str) -> EngineResult[list[ApprovalInstance]]:
        prefix = f"{entity_type}:"
        with self._lock:
            ids = {v for k, v in self._references.items() if k.startswith(prefix)}
            snapshot = list(self._instances.values())
        return EngineResult.ok(sorted(
            (i for i in snapshot
             if i.approval_id in ids or i.metadata.get("entity_type") == entity_type),
            key=lambda i: i.created_at,
        ))

    def find_expired(self, as_of: datetime) -> EngineResult[list[ApprovalInstance]]:
        return EngineResult.ok(sorted(
            (i for i in self._snapshot()
             if i.status == ApprovalStatus.PENDING
             and i.expires_at is not None and i.expires_at <= as_of),
            key=lambda i: i.expires_at,
        ))

    def exists(self, approval_id: str) -> EngineResult[bool]:
        with self._lock:
            return EngineResult.ok(approval_id in self._instances)

    def __len__(self) -> int:
        return len(self._instances)
