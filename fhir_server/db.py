# fhir_server/db.py

from __future__ import annotations

import logging
from typing import Iterator

from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import DATABASE_URL, SQL_ECHO

log = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def make_engine(url: str = DATABASE_URL) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        # FastAPI runs sync routes in a threadpool
        connect_args["check_same_thread"] = False
    try:
        return create_engine(url, echo=SQL_ECHO, connect_args=connect_args)
    except SQLAlchemyError as e:
        log.error("Failed to create engine: %s", e)
        raise


engine = make_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False)


def init_db(bind: Engine = engine) -> None:
    """
    Create tables if they don't exist:
      observations(observation_id, version_id, is_deleted, ... flattened FHIR fields)
      observation_records(record_id, observation_id, version_id, last_modified, action)
    """
    from . import models  # noqa: F401  (registers tables on Base.metadata)

    existing = set(inspect(bind).get_table_names())
    expected = set(Base.metadata.tables.keys())
    if expected.issubset(existing):
        log.info("All tables exist. Skipping creation.")
        return

    log.info("Creating tables: %s", ", ".join(sorted(expected - existing)))
    Base.metadata.create_all(bind)


def get_session() -> Iterator[Session]:
    """
    One session per request. Anything not committed via the repository's save()
    is rolled back when the request ends, on every exit path.
    """
    session = SessionLocal()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
