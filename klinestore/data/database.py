"""Database engine, session factory, and initialisation.

Startup sequence
────────────────
1. Ensure the DB directory exists (file-backed SQLite only).
2. Apply PRAGMA optimisations on every new connection (WAL, cache, temp-store).
3. Import klinestore.data.models so both tables are registered.
4. Run create_all (idempotent; skips tables that already exist).
5. Health-check SELECT 1.

The engine is module state so that every store call shares one pool.
``configure_engine`` rebinds it (tests point it at a temporary file).
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from klinestore.config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base shared by every klinestore table."""


def _apply_sqlite_pragmas(dbapi_conn, _connection_record) -> None:
    """Apply per-connection SQLite PRAGMAs.

    WAL mode
        Readers (kline queries, the streaming history loader) keep working
        while a backfill batch is being written.

    synchronous = NORMAL
        Fsync on WAL checkpoints only.  Acceptable for a market-data store
        that can be rebuilt from the exchange.

    cache_size = -65536
        64 MB page cache; gap scans and aggregate refreshes walk the same
        (symbol, timeframe) partition repeatedly.

    temp_store = MEMORY
        The recursive calendar CTE and GROUP BY temporaries stay in RAM.
    """
    cursor = dbapi_conn.cursor()
    pragmas = [
        "PRAGMA journal_mode=WAL",
        "PRAGMA synchronous=NORMAL",
        "PRAGMA cache_size=-65536",   # 64 MB
        "PRAGMA temp_store=MEMORY",
        "PRAGMA foreign_keys=ON",
    ]
    for pragma in pragmas:
        cursor.execute(pragma)
    cursor.close()


def _build_engine(url: str) -> Engine:
    parsed = make_url(url)
    kwargs: dict[str, object] = {"pool_pre_ping": True}

    if parsed.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
        if parsed.database in (None, "", ":memory:"):
            # One shared connection, otherwise every session sees an empty DB.
            kwargs["poolclass"] = StaticPool

    new_engine = create_engine(url, **kwargs)
    if parsed.get_backend_name() == "sqlite":
        event.listen(new_engine, "connect", _apply_sqlite_pragmas)
    return new_engine


# ── Engine & session factory ──────────────────────────────────────────────────

engine: Engine = _build_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def configure_engine(url: str) -> Engine:
    """Rebind the module engine and session factory to *url*."""
    global engine, SessionLocal
    engine.dispose()
    engine = _build_engine(url)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return engine


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """Session scope: commit on success, roll back and re-raise on error."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ── Public initialisation entry-point ─────────────────────────────────────────

def initialize_database() -> None:
    """Create all tables and verify connectivity.

    Called once at application startup.  Idempotent, safe to call on every
    startup.
    """
    database = make_url(str(engine.url)).database
    if engine.url.get_backend_name() == "sqlite" and database not in (None, "", ":memory:"):
        Path(database).parent.mkdir(parents=True, exist_ok=True)

    # Registers Candle and BackfillRun on Base.metadata.
    import klinestore.data.models  # noqa: F401

    Base.metadata.create_all(bind=engine)

    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))

    logger.info("Database initialised at %s", engine.url.render_as_string(hide_password=True))
