"""SQLAlchemy plumbing for the build history ledger.

The ledger defaults to a SQLite file under the work directory; any other
SQLAlchemy URL (including ``sqlite://`` for an in-memory store) works too.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base shared by the ledger tables."""


def get_engine(db_url: str) -> Engine:
    """Build an engine for ``db_url``.

    A file-backed SQLite database gets its parent directory created first,
    so a fresh work directory can hold the ledger without extra setup.
    """
    url = make_url(db_url)
    connect_args: dict[str, object] = {}
    if url.get_backend_name() == "sqlite":
        connect_args["check_same_thread"] = False
        database = url.database
        if database and database != ":memory:":
            Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)
    logger.debug("Opening history database %s", url.render_as_string(hide_password=True))
    return create_engine(url, connect_args=connect_args)


def get_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return a session factory whose objects stay readable after commit."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    """Open a session, committing on success and rolling back on error."""
    with session_factory() as session:
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        session.commit()


def create_all_tables(engine: Engine) -> None:
    """Create any ledger tables missing from the database."""
    # registers BuildRun on Base.metadata
    from fedora_kernel_builder import history  # noqa: F401

    Base.metadata.create_all(engine)


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]
