"""Database engine and helpers.

This module builds the pooled SQLModel/SQLAlchemy engine used by the
relational storage backend. The engine is created once at application
startup and disposed at shutdown; nothing here keeps a module-level
connection handle. By default the database is a SQLite file next to the
package (`quiz.db`), but any SQLAlchemy URL works.
"""

import logging
import time
from typing import Optional

from sqlalchemy import event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from . import models
from .config import Settings
from .schemas import GlobalConfig

logger = logging.getLogger("dailyquiz.database")

CONFIG_KEY = "config"


def _enable_sqlite_foreign_keys(dbapi_conn, _record):
    cur = dbapi_conn.cursor()
    cur.execute("PRAGMA foreign_keys=ON")
    cur.close()


def build_engine(settings: Settings) -> Engine:
    """Create (but do not probe) an engine for `settings.DATABASE_URL`.

    Server databases get a bounded pool: at most `DB_POOL_SIZE +
    DB_MAX_OVERFLOW` simultaneous connections, further checkouts wait up
    to `DB_POOL_TIMEOUT` seconds instead of failing immediately.
    """
    url = settings.DATABASE_URL
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, echo=False, **kwargs)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine
    return create_engine(
        url,
        echo=False,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_pre_ping=True,
    )


def connect_engine(settings: Settings, sleep=time.sleep) -> Optional[Engine]:
    """Build the engine and verify it answers a trivial query.

    The probe is retried `DB_CONNECT_RETRIES` times with a fixed delay.
    Returns `None` when no URL is configured or every attempt failed; the
    caller then runs on the local store for the rest of the process.
    """
    if not settings.DATABASE_URL:
        logger.warning("DATABASE_URL is not set; using the local store")
        return None
    try:
        engine = build_engine(settings)
    except (SQLAlchemyError, ImportError, ValueError) as exc:
        logger.error("could not create database engine: %s", exc)
        return None
    for attempt in range(1, settings.DB_CONNECT_RETRIES + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("database connected (attempt %d)", attempt)
            return engine
        except SQLAlchemyError as exc:
            logger.error(
                "database connection failed (attempt %d/%d): %s",
                attempt, settings.DB_CONNECT_RETRIES, exc,
            )
            if attempt < settings.DB_CONNECT_RETRIES:
                sleep(settings.DB_RETRY_DELAY_SECONDS)
    logger.error("max retries reached; falling back to the local store")
    engine.dispose()
    return None


def create_db_and_tables(engine: Engine) -> None:
    """Create tables from SQLModel metadata and seed the global config.

    Both steps are idempotent, so this runs on every startup.
    """
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        if session.get(models.GlobalState, CONFIG_KEY) is None:
            session.add(models.GlobalState(key=CONFIG_KEY, value=GlobalConfig().model_dump()))
            session.commit()
