"""SQLAlchemy session handling utilities."""
from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from newsletter_desk.core.config import settings
from newsletter_desk.db import models


def build_engine(database_url: str) -> Engine:
    """Create an engine; SQLite connections may be shared by request threads."""

    url = make_url(database_url)
    kwargs: dict = {"future": True, "pool_pre_ping": True}
    if url.drivername.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


def init_db(bind: Engine) -> None:
    """Create the SQLite parent directory and the schema if missing."""

    database = bind.url.database
    if bind.url.drivername.startswith("sqlite") and database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)
    models.Base.metadata.create_all(bind=bind)


def create_session_factory(database_url: str) -> sessionmaker:
    bind = build_engine(database_url)
    init_db(bind)
    return sessionmaker(autocommit=False, autoflush=False, bind=bind, expire_on_commit=False)


# The engine is created once and reused; the schema is created on first use.
engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker = SessionLocal) -> Iterator[Session]:
    """Context manager for one unit of work; commits on success."""

    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
