"""
Datastore engine and session factory.

The lifecycle engine needs one thing from its datastore: conditional
updates (UPDATE ... WHERE status = :expected) plus a queryable audit table.
PostgreSQL serves production; SQLite serves local runs and the test suite.

The API process and the operator script each open a single session from
SessionLocal and hand it to LifecycleRuntime.
"""

from pathlib import Path

from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.src.config.settings import get_settings


# backend/.env, for settings not exported in the environment
_env_file = Path(__file__).resolve().parents[2] / '.env'
if _env_file.exists():
    load_dotenv(dotenv_path=_env_file)


def build_engine(url: str) -> Engine:
    """
    Create an engine for ``url``.

    SQLite gets a single shared connection usable from the event loop's
    thread and from worker threads; anything else gets a pre-pinged pool.
    """
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={'check_same_thread': False},
            poolclass=StaticPool,
            future=True,
        )
    return create_engine(
        url,
        pool_size=10,
        max_overflow=5,
        pool_pre_ping=True,
        pool_recycle=1800,
        future=True,
    )


@event.listens_for(Engine, "connect")
def enforce_sqlite_foreign_keys(dbapi_conn, connection_record):
    """Tickets cascade with their event, so SQLite must enforce foreign keys."""
    if type(dbapi_conn).__module__.startswith("sqlite3"):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


engine = build_engine(get_settings().db_url)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    expire_on_commit=True,
    future=True,
)
