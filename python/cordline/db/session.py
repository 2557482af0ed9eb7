"""Sessions and the one-transaction-per-operation helper.

Every service write runs inside ``transaction(db)``: the whole operation
commits together or nothing it wrote survives. Realtime fanout is published
only after that block exits, so a push never describes uncommitted rows.
"""

from collections.abc import Generator
from contextlib import contextmanager
from functools import lru_cache

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from cordline.db.engine import get_engine


def create_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Build a sessionmaker for ``engine`` (the process engine by default).

    expire_on_commit is off so services can return committed ORM rows to
    routes and fanout without a reload round trip.
    """
    return sessionmaker(
        bind=engine if engine is not None else get_engine(),
        autoflush=False,
        expire_on_commit=False,
    )


@lru_cache
def get_session_factory() -> sessionmaker[Session]:
    return create_session_factory()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a request-scoped session."""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Generator[Session, None, None]:
    """Commit on clean exit; on any exception roll back and re-raise it as is.

    Usage:
        with transaction(db):
            db.add(conversation)
            db.add_all(participants)
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
