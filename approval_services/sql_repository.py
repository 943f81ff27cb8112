"""
approval_services.sql_repository -- SQLAlchemy-backed ApprovalRepository.

Responsibility:
    Persist approval instances (stages, approver snapshots, votes) and
    entity references through the ORM models in ``approval_kernel.models``.

Architecture position:
    Services > adapters.  Takes a ``sessionmaker`` and opens one session
    (one transaction) per repository call; callers never see a Session.

Invariants enforced:
    - Compare-and-swap on ``version``: updates are issued as
      ``UPDATE approval_instances ... WHERE version = :expected``; zero rows
      affected means another writer got there first.
    - A reference is written in the same transaction as the instance it
      points at.
    - Database errors never cross the port; they become SAVE_FAILED or
      DELETE_FAILED results and the transaction is rolled back.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from sqlalchemy import asc, delete, desc, exists, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

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
from approval_kernel.exceptions import ConcurrentModificationError, SaveFailedError
from approval_kernel.logging_config import get_logger
from approval_kernel.models.approval import (
    ApprovalInstanceModel,
    ApprovalReferenceModel,
    ApprovalStageApproverModel,
    ApprovalStageModel,
    ApprovalVoteModel,
)

logger = get_logger("services.sql_repository")

_SORT_COLUMNS = {
    SortField.CREATED_AT: ApprovalInstanceModel.created_at,
    SortField.UPDATED_AT: ApprovalInstanceModel.updated_at,
    SortField.STATUS: ApprovalInstanceModel.status,
}


def _approvals_with_approver(principal_id: str):
    return (
        select(ApprovalStageModel.approval_id)
        .join(
            ApprovalStageApproverModel,
            ApprovalStageApproverModel.stage_id == ApprovalStageModel.id,
        )
        .where(ApprovalStageApproverModel.principal_id == principal_id)
    )


def _apply_filters(stmt, filters: ApprovalQueryFilters):
    model = ApprovalInstanceModel
    if filters.statuses is not None:
        stmt = stmt.where(model.status.in_([s.value for s in filters.statuses]))
    if filters.initiator_id is not None:
        stmt = stmt.where(model.initiator_id == filters.initiator_id)
    if filters.approver_id is not None:
        stmt = stmt.where(model.approval_id.in_(_approvals_with_approver(filters.approver_id)))
    if filters.policy_id is not None:
        stmt = stmt.where(model.policy_id == filters.policy_id)
    if filters.entity_type is not None:
        stmt = stmt.where(model.entity_type == filters.entity_type)
    if filters.created_after is not None:
        stmt = stmt.where(model.created_at >= filters.created_after)
    if filters.created_before is not None:
        stmt = stmt.where(model.created_at <= filters.created_before)
    if filters.expiring_before is not None:
        stmt = stmt.where(
            model.expires_at.is_not(None),
            model.expires_at <= filters.expiring_before,
        )
    return stmt


class SqlApprovalRepository:
    """ApprovalRepository over any SQLAlchemy 2.0 session factory."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    # -- writes ----------------------------------------------------------

    def save(self, instance: ApprovalInstance) -> EngineResult[ApprovalInstance]:
        return self._save(instance, None)

    def save_with_reference(
        self,
        instance: ApprovalInstance,
        reference: ApprovalReference,
    ) -> EngineResult[ApprovalInstance]:
        return self._save(instance, reference)

    def _save(
        self,
        instance: ApprovalInstance,
        reference: ApprovalReference | None,
    ) -> EngineResult[ApprovalInstance]:
        try:
            with self._session_factory() as session, session.begin():
                saved = self._write(session, instance)
                if reference is not None:
                    self._claim_reference(session, instance.approval_id, reference)
        except ConcurrentModificationError as exc:
            logger.warning(
                "approval_save_conflict",
                extra={
                    "approval_id": instance.approval_id,
                    "expected_version": exc.expected_version,
                    "actual_version": exc.actual_version,
                },
            )
            return EngineResult.fail(
                ErrorCode.SAVE_FAILED,
                str(exc),
                approval_id=instance.approval_id,
                expected_version=exc.expected_version,
                actual_version=exc.actual_version,
            )
        except SaveFailedError as exc:
            return EngineResult.fail(
                ErrorCode.SAVE_FAILED, str(exc), approval_id=instance.approval_id,
            )
        except SQLAlchemyError as exc:
            logger.error(
                "approval_save_error",
                extra={"approval_id": instance.approval_id, "error": str(exc)},
            )
            return EngineResult.fail(
                ErrorCode.SAVE_FAILED,
                f"Failed to save approval {instance.approval_id}: {exc}",
                approval_id=instance.approval_id,
            )
        return EngineResult.ok(saved)

    def _claim_reference(
        self, session: Session, approval_id: str, reference: ApprovalReference,
    ) -> None:
        owner = session.scalar(
            select(ApprovalReferenceModel.approval_id).where(
                ApprovalReferenceModel.entity_type == reference.entity_type,
                ApprovalReferenceModel.entity_id == reference.entity_id,
            )
        )
        if owner is None:
            session.add(ApprovalReferenceModel(
                entity_type=reference.entity_type,
                entity_id=reference.entity_id,
                approval_id=approval_id,
            ))
        elif owner != approval_id:
            raise SaveFailedError(
                f"Reference {reference.key} already belongs to approval {owner}"
            )

    def _stored_version(self, session: Session, approval_id: str) -> int:
        version = session.scalar(
            select(ApprovalInstanceModel.version).where(
                ApprovalInstanceModel.approval_id == approval_id,
            )
        )
        return version or 0

    def _write(self, session: Session, instance: ApprovalInstance) -> ApprovalInstance:
        new_version = instance.version + 1
        if instance.version == 0:
            actual = self._stored_version(session, instance.approval_id)
            if actual != 0:
                raise ConcurrentModificationError(instance.approval_id, 0, actual)
            session.add(ApprovalInstanceModel.from_dto(instance, new_version))
        else:
            bumped = session.execute(
                update(ApprovalInstanceModel)
                .where(
                    ApprovalInstanceModel.approval_id == instance.approval_id,
                    ApprovalInstanceModel.version == instance.version,
                )
                .values(version=new_version)
                .execution_options(synchronize_session=False)
            )
            if bumped.rowcount != 1:
                raise ConcurrentModificationError(
                    instance.approval_id,
                    instance.version,
                    self._stored_version(session, instance.approval_id),
                )
            model = session.scalars(
                select(ApprovalInstanceModel)
                .where(ApprovalInstanceModel.approval_id == instance.approval_id)
                .execution_options(populate_existing=True)
            ).one()
            model.apply_dto(instance, new_version)
        session.flush()
        return replace(instance, version=new_version)

    def delete(self, approval_id: str) -> EngineResult[bool]:
        try:
            with self._session_factory() as session, session.begin():
                session.execute(
                    delete(ApprovalReferenceModel)
                    .where(ApprovalReferenceModel.approval_id == approval_id)
                )
                model = session.scalars(
                    select(ApprovalInstanceModel)
                    .where(ApprovalInstanceModel.approval_id == approval_id)
                ).one_or_none()
                if model is None:
                    return EngineResult.ok(False)
                session.delete(model)
        except SQLAlchemyError as exc:
            logger.error(
                "approval_delete_error",
                extra={"approval_id": approval_id, "error": str(exc)},
            )
            return EngineResult.fail(
                ErrorCode.DELETE_FAILED,
                f"Failed to delete approval {approval_id}: {exc}",
                approval_id=approval_id,
            )
        return EngineResult.ok(True)

    # -- reads -----------------------------------------------------------

    def _read(self, action, query):
        try:
            with self._session_factory() as session:
                return EngineResult.ok(query(session))
        except SQLAlchemyError as exc:
            logger.error("approval_query_error", extra={"query": action, "error": str(exc)})
            return EngineResult.fail(
                ErrorCode.NOT_FOUND, f"Query {action} failed: {exc}", query=action,
            )

    def _list(self, session: Session, stmt) -> list[ApprovalInstance]:
        return [m.to_dto() for m in session.scalars(stmt).all()]

    def find_by_id(self, approval_id: str) -> EngineResult[ApprovalInstance | None]:
        def query(session: Session) -> ApprovalInstance | None:
            model = session.scalars(
                select(ApprovalInstanceModel)
                .where(ApprovalInstanceModel.approval_id == approval_id)
            ).one_or_none()
            return model.to_dto() if model is not None else None

        return self._read("find_by_id", query)

    def find_by_reference(
        self, reference: ApprovalReference,
    ) -> EngineResult[ApprovalInstance | None]:
        def query(session: Session) -> ApprovalInstance | None:
            model = session.scalars(
                select(ApprovalInstanceModel)
                .join(
                    ApprovalReferenceModel,
                    ApprovalReferenceModel.approval_id == ApprovalInstanceModel.approval_id,
                )
                .where(
                    ApprovalReferenceModel.entity_type == reference.entity_type,
                    ApprovalReferenceModel.entity_id == reference.entity_id,
                )
            ).one_or_none()
            return model.to_dto() if model is not None else None

        return self._read("find_by_reference", query)

    def find_many(
        self,
        filters: ApprovalQueryFilters | None = None,
        options: ApprovalQueryOptions | None = None,
    ) -> EngineResult[PaginatedResult[ApprovalInstance]]:
        filters = filters or ApprovalQueryFilters()
        options = options or ApprovalQueryOptions()
        direction = desc if options.sort_order == SortOrder.DESC else asc

        def query(session: Session) -> PaginatedResult[ApprovalInstance]:
            base = _apply_filters(select(ApprovalInstanceModel), filters)
            total = session.scalar(select(func.count()).select_from(base.subquery()))
            page = (
                base.order_by(
                    direction(_SORT_COLUMNS[options.sort_by]),
                    direction(ApprovalInstanceModel.approval_id),
                )
                .offset(options.offset)
                .limit(options.limit)
            )
            return PaginatedResult(
                items=tuple(self._list(session, page)),
                total=total or 0,
                offset=options.offset,
                limit=options.limit,
            )

        return self._read("find_many", query)

    def find_pending_for_principal(self, principal_id: str) -> EngineResult[list[ApprovalInstance]]:
        already_voted = exists().where(
            ApprovalVoteModel.stage_id == ApprovalStageModel.id,
            ApprovalVoteModel.principal_id == principal_id,
        )
        awaiting = (
            _approvals_with_approver(principal_id)
            .where(ApprovalStageModel.status == StageStatus.ACTIVE.value)
            .where(~already_voted)
        )
        stmt = (
            select(ApprovalInstanceModel)
            .where(
                ApprovalInstanceModel.status == ApprovalStatus.PENDING.value,
                ApprovalInstanceModel.approval_id.in_(awaiting),
            )
            .order_by(ApprovalInstanceModel.created_at)
        )
        return self._read("find_pending_for_principal", lambda s: self._list(s, stmt))

    def find_by_initiator(self, initiator_id: str) -> EngineResult[list[ApprovalInstance]]:
        stmt = (
            select(ApprovalInstanceModel)
            .where(ApprovalInstanceModel.initiator_id == initiator_id)
            .order_by(ApprovalInstanceModel.created_at)
        )
        return self._read("find_by_initiator", lambda s: self._list(s, stmt))

    def find_by_entity_type(self, entity_type: str) -> EngineResult[list[ApprovalInstance]]:
        referenced = select(ApprovalReferenceModel.approval_id).where(
            ApprovalReferenceModel.entity_type == entity_type,
        )
        stmt = (
            select(ApprovalInstanceModel)
            .where(or_(
                ApprovalInstanceModel.entity_type == entity_type,
                ApprovalInstanceModel.approval_id.in_(referenced),
            ))
            .order_by(ApprovalInstanceModel.created_at)
        )
        return self._read("find_by_entity_type", lambda s: self._list(s, stmt))

    def find_expired(self, as_of: datetime) -> EngineResult[list[ApprovalInstance]]:
        stmt = (
            select(ApprovalInstanceModel)
            .where(
                ApprovalInstanceModel.status == ApprovalStatus.PENDING.value,
                ApprovalInstanceModel.expires_at.is_not(None),
                ApprovalInstanceModel.expires_at <= as_of,
            )
            .order_by(ApprovalInstanceModel.expires_at)
        )
        return self._read("find_expired", lambda s: self._list(s, stmt))

    def exists(self, approval_id: str) -> EngineResult[bool]:
        stmt = select(
            exists().where(ApprovalInstanceModel.approval_id == approval_id)
        )
        return self._read("exists", lambda s: bool(s.scalar(stmt)))
