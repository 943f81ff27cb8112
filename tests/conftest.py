"""
Pytest fixtures for the approval kernel test suite.

Provides:
- Structured logging setup and a ``captured_logs`` fixture
- Deterministic clock, in-memory repository, recording notifications
- A role/manager directory and policy factories
- A SQLite-backed SqlApprovalRepository (PostgreSQL when DATABASE_URL is set)

Environment Variables:
- DATABASE_URL: optional PostgreSQL URL for the SQL repository tests.
  If not set, an in-memory SQLite database is used.
"""

import json
import logging
import os
from io import StringIO
from datetime import datetime, timedelta, UTC

import pytest

from approval_engines.state_machine import create_instance
from approval_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from approval_kernel.domain.approval import (
    ApprovalInstance,
    ApprovalPolicy,
    ApproverSelector,
    PolicyPredicate,
    PredicateKind,
    PredicateLogic,
    PredicateOperator,
    StageTemplate,
    VotingRule,
)
from approval_kernel.domain.clock import DeterministicClock
from approval_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from approval_services.memory_repository import InMemoryApprovalRepository
from approval_services.notifications import RecordingNotificationService
from approval_services.sql_repository import SqlApprovalRepository
from approval_services.static_providers import StaticApproverResolver, StaticPolicyProvider


T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)


# =============================================================================
# Factory helpers
# =============================================================================


def make_stage(
    name: str = "Review",
    *principal_ids: str,
    rule: VotingRule | None = None,
    selector: ApproverSelector | None = None,
) -> StageTemplate:
    return StageTemplate(
        name=name,
        approver_selector=selector or ApproverSelector.explicit(*principal_ids),
        voting_rule=rule or VotingRule.any_rule(),
    )


def gte(metric: str, value) -> PolicyPredicate:
    return PolicyPredicate(PredicateKind.THRESHOLD, metric, PredicateOperator.GTE, value)


def make_policy(
    policy_id: str = "policy-test",
    stages: tuple[StageTemplate, ...] = (),
    priority: int = 10,
    predicates: tuple[PolicyPredicate, ...] = (),
    predicate_logic: PredicateLogic = PredicateLogic.ALL,
    skippable: bool = False,
    entity_types: tuple[str, ...] = (),
) -> ApprovalPolicy:
    return ApprovalPolicy(
        policy_id=policy_id,
        name=policy_id.replace("-", " ").title(),
        priority=priority,
        predicates=predicates,
        predicate_logic=predicate_logic,
        required_stages=stages,
        skippable=skippable,
        entity_types=entity_types,
    )


def make_instance(
    *stage_approvers: tuple[str, ...],
    rules: tuple[VotingRule, ...] | None = None,
    approval_id: str = "apr-1",
    initiator_id: str = "alice",
    now: datetime = T0,
    expires_at: datetime | None = None,
    skippable: bool = False,
    metadata: dict | None = None,
) -> ApprovalInstance:
    """Build a pending instance with one stage per approver tuple.

    Stages are named "Stage 1", "Stage 2", ...; rules default to ``any``.
    """
    rules = rules or tuple(VotingRule.any_rule() for _ in stage_approvers)
    stages = tuple(
        make_stage(f"Stage {i + 1}", rule=rule)
        for i, rule in enumerate(rules)
    )
    policy = make_policy(stages=stages, skippable=skippable)
    result = create_instance(
        approval_id,
        initiator_id,
        policy,
        [list(a) for a in stage_approvers],
        now=now,
        expires_at=expires_at,
        metadata=metadata,
    )
    assert result.success, result.error
    return result.value


def seed_many(repository, count: int = 5) -> list[ApprovalInstance]:
    """Save apr-0 .. apr-N, one hour apart, alternating initiators.

    The first three are purchase orders, the rest invoices; apr-i expires
    i + 1 days after T0.
    """
    saved = []
    for i in range(count):
        instance = make_instance(
            ("mgr",), ("dir",),
            approval_id=f"apr-{i}",
            initiator_id="alice" if i % 2 == 0 else "bob",
            now=T0 + timedelta(hours=i),
            expires_at=T0 + timedelta(days=i + 1),
            metadata={"entity_type": "purchase_order" if i < 3 else "invoice"},
        )
        result = repository.save(instance)
        assert result.success, result.error
        saved.append(result.value)
    return saved


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture approval_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, vote_use_case):
            vote_use_case.process_vote(...)
            logs = captured_logs()
            assert any(r["message"] == "vote_processed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("approval_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(T0)


@pytest.fixture
def repository() -> InMemoryApprovalRepository:
    return InMemoryApprovalRepository()


@pytest.fixture
def notifications() -> RecordingNotificationService:
    return RecordingNotificationService()


@pytest.fixture
def resolver() -> StaticApproverResolver:
    """Small org: alice reports to mgr-1, who reports to dir-1."""
    return StaticApproverResolver(
        roles={
            "manager": ("mgr-1",),
            "director": ("dir-1",),
            "finance": ("fin-1", "fin-2"),
            "vp": ("vp-1",),
            "cfo": ("cfo-1",),
            "procurement": (),
        },
        managers={"alice": "mgr-1", "mgr-1": "dir-1", "dir-1": "vp-1"},
    )


@pytest.fixture
def two_stage_policy() -> ApprovalPolicy:
    """Manager then finance (threshold 2), for purchase orders over 1000."""
    return make_policy(
        policy_id="policy-two-stage",
        priority=50,
        predicates=(gte("total_cost_change", 1000),),
        stages=(
            make_stage("Manager Review", selector=ApproverSelector.role("manager")),
            make_stage(
                "Finance Review",
                selector=ApproverSelector.role("finance"),
                rule=VotingRule.threshold_rule(2),
            ),
        ),
        entity_types=("purchase_order",),
    )


@pytest.fixture
def auto_policy() -> ApprovalPolicy:
    """Skippable, stage-less policy for zero-cost changes."""
    return make_policy(
        policy_id="policy-no-cost",
        priority=40,
        predicates=(PolicyPredicate(
            PredicateKind.EQUALITY, "total_cost_change", PredicateOperator.EQ, 0,
        ),),
        skippable=True,
        entity_types=("purchase_order",),
    )


@pytest.fixture
def policy_provider(two_stage_policy, auto_policy) -> StaticPolicyProvider:
    return StaticPolicyProvider([two_stage_policy, auto_policy])


# =============================================================================
# Database fixtures
# =============================================================================


DEFAULT_DATABASE_URL = "sqlite://"


@pytest.fixture
def sql_repository():
    """SqlApprovalRepository on a fresh schema; torn down after the test."""
    init_engine_from_url(os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL))
    create_tables()
    try:
        yield SqlApprovalRepository(get_session_factory())
    finally:
        drop_tables()
        reset_engine()
