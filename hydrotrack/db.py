from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from .settings import settings


class Base(DeclarativeBase):
    pass


_engine = None
_SessionLocal = None


def init_engine(database_url: str | None = None, **engine_kwargs):
    """Create the process-wide engine.

    The pool is sized for a full worker batch: every job thread holds its own
    connection while it records an outcome.
    """
    global _engine, _SessionLocal
    url = database_url or settings.database_url
    options = {"pool_pre_ping": True}
    if not url.startswith("sqlite"):
        options.update(pool_size=settings.db_pool_size, max_overflow=settings.db_max_overflow)
    options.update(engine_kwargs)
    _engine = create_engine(url, **options)
    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
    return _engine


def get_engine():
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def SessionLocal():
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


def get_db():
    db = SessionLocal()()
    try:
        yield db
    finally:
        db.close()


def dialect_name(db) -> str:
    """Name of the dialect a session is bound to ("postgresql", "sqlite", ...)."""
    return db.get_bind().dialect.name


def upsert_insert(db, model):
    """INSERT supporting on_conflict_do_update / on_conflict_do_nothing for the session's dialect."""
    if dialect_name(db) == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)
