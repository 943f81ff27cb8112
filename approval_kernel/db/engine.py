"""
Module: approval_kernel.db.engine
Responsibility: Own the process-wide SQLAlchemy engine and session factory
    used by SqlApprovalRepository, plus schema create/drop helpers.
Architecture position: Kernel > DB. create_tables/drop_tables import
    approval_kernel.models so the approval tables register on Base.metadata;
    nothing else here reaches outside db/.

Invariants enforced:
    - SQLite URLs share one connection (StaticPool) so an in-memory
      database outlives individual sessions.
    - Server databases get a pre-pinged QueuePool at READ COMMITTED; the
      version column on approval_instances catches racing writers.
    - Sessions never expire attributes on commit, so DTO conversion after
      commit does not trigger lazy reloads.

Failure modes:
    - RuntimeError from any accessor before init_engine_from_url().
"""

import atexit
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from approval_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


def _pool_options(
    database_url: str,
    *,
    pool_size: int,
    max_overflow: int,
    pool_timeout: int,
    pool_recycle: int,
) -> dict[str, Any]:
    if database_url.startswith("sqlite"):
        return {
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
        }
    return {
        "poolclass": QueuePool,
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_pre_ping": True,
        "pool_timeout": pool_timeout,
        "pool_recycle": pool_recycle,
        "isolation_level": "READ COMMITTED",
    }


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 5,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
) -> Engine:
    """
    Create the engine and session factory for ``database_url``.

    Calling again without reset_engine() replaces the previous engine
    without disposing it.

    Args:
        database_url: e.g. ``sqlite://`` or ``postgresql+psycopg://...``.
        echo: Emit every SQL statement through SQLAlchemy's logger.
        pool_size, max_overflow, pool_timeout, pool_recycle: QueuePool
            tuning; ignored for SQLite.
    """
    global _engine, _SessionFactory

    options = _pool_options(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
    )
    _engine = create_engine(database_url, echo=echo, **options)
    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={
            "dialect": _engine.dialect.name,
            "pool_class": options["poolclass"].__name__,
            "echo": echo,
        },
    )
    return _engine


def _require() -> tuple[Engine, sessionmaker[Session]]:
    if _engine is None or _SessionFactory is None:
        raise RuntimeError(
            "Engine not initialized. Call init_engine_from_url() first."
        )
    return _engine, _SessionFactory


def get_engine() -> Engine:
    return _require()[0]


def get_session_factory() -> sessionmaker[Session]:
    """Factory handed to SqlApprovalRepository (one session per call)."""
    return _require()[1]


def _metadata():
    from approval_kernel.db.base import Base
    import approval_kernel.models  # noqa: F401  registers tables

    return Base.metadata


def create_tables() -> None:
    _metadata().create_all(get_engine())


def drop_tables() -> None:
    """Drop every approval table. Tests only."""
    _metadata().drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionFactory = None


def _atexit_dispose():
    if _engine is not None:
        try:
            _engine.dispose()
        except SQLAlchemyError:
            pass


atexit.register(_atexit_dispose)
