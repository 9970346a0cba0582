"""Database setup and session utilities for SQLAlchemy.

Two declarative bases live here:
- DirectoryBase: tables of the tenant directory (customers, api_keys) in DATABASE_URL.
- StoreBase: the products table that each tenant keeps in its own pgvector store.

Helpers:
- create_directory_engine: Engine for the directory database (SQLite-aware for tests).
- make_sessionmaker: Session factory bound to an engine.
- init_db: Creates the directory tables; idempotent.
- session_scope: Context-managed transactional scope for imperative workflows.
"""
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from askgate.config import settings

DirectoryBase = declarative_base()
StoreBase = declarative_base()


def create_directory_engine(url: Optional[str] = None) -> Engine:
    """Create the engine for the tenant directory.

    Args:
        url: SQLAlchemy URL; defaults to settings.DATABASE_URL.

    Returns:
        Engine: A pooled engine. In-memory SQLite URLs share one connection so
            every session sees the same database.
    """
    url = url or settings.DATABASE_URL
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/").endswith("sqlite:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, future=True, **kwargs)
    return create_engine(url, pool_pre_ping=True, future=True)


def make_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine, future=True)


def init_db(engine: Engine) -> None:
    """Create the directory tables if they do not exist yet."""
    # Import models after the bases are defined
    from askgate import models  # noqa: F401

    DirectoryBase.metadata.create_all(bind=engine)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations.

    Yields:
        Session: A SQLAlchemy session from the given factory.

    Notes:
        - Commits on successful exit.
        - Rolls back and re-raises on exception.
        - Always closes the session at the end.
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
