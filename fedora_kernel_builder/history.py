"""Build history ledger.

Each workflow invocation that finishes, suspends or fails records a
BuildRun row. The ledger is informational: resumption is driven solely by
the persisted WorkflowState.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String, Text, select
from sqlalchemy.orm import Mapped, Session, mapped_column, sessionmaker

from fedora_kernel_builder.db import (
    Base,
    create_all_tables,
    get_engine,
    get_session,
    get_session_factory,
)
from fedora_kernel_builder.types import RunStatus

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BuildRun(Base):
    """ORM model for one workflow invocation.

    Attributes:
        id: Primary key.
        kernel_version: Selected kernel version, if known.
        kernel_release: Built kernel release, if the build completed.
        status: succeeded, suspended or failed.
        phase: Last completed phase.
        error_code: WorkflowError code for failures.
        error_message: Failure message.
        signed: Whether the installed kernel was signed.
        artifact_path: RPM archive or RPM directory.
        finished_at: When the run ended.
    """

    __tablename__ = "build_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kernel_version: Mapped[str | None] = mapped_column(String(64), nullable=True)
    kernel_release: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    phase: Mapped[str | None] = mapped_column(String(32), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    signed: Mapped[bool] = mapped_column(nullable=False, default=False)
    artifact_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    finished_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<BuildRun(id={self.id}, kernel_version='{self.kernel_version}', "
            f"status='{self.status}')>"
        )


class BuildHistory:
    """Record and query BuildRun rows.

    Args:
        session_factory: Session factory bound to an engine with tables created.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    @classmethod
    def open(cls, db_url: str) -> BuildHistory:
        """Open (and create if needed) the history database."""
        engine = get_engine(db_url)
        create_all_tables(engine)
        return cls(get_session_factory(engine))

    def record(
        self,
        status: RunStatus,
        kernel_version: str | None = None,
        kernel_release: str | None = None,
        phase: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
        signed: bool = False,
        artifact_path: str | None = None,
    ) -> BuildRun:
        run = BuildRun(
            kernel_version=kernel_version,
            kernel_release=kernel_release,
            status=status.value,
            phase=phase,
            error_code=error_code,
            error_message=error_message,
            signed=signed,
            artifact_path=artifact_path,
            finished_at=_utcnow(),
        )
        with get_session(self.session_factory) as session:
            session.add(run)
        logger.debug("Recorded build run: %r", run)
        return run

    def list_runs(self, status: RunStatus | None = None, limit: int = 20) -> list[BuildRun]:
        """List runs, newest first.

        Args:
            status: Filter by status.
            limit: Maximum results to return.
        """
        stmt = select(BuildRun)
        if status is not None:
            stmt = stmt.where(BuildRun.status == status.value)
        stmt = stmt.order_by(BuildRun.id.desc()).limit(limit)
        with get_session(self.session_factory) as session:
            return list(session.execute(stmt).scalars().all())


__all__ = ["BuildHistory", "BuildRun"]
