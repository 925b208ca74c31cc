"""
core/db.py -- SQLAlchemy engine construction shared by every store.

SQLite specifics handled here:
  check_same_thread=False -- FastAPI runs sync routes in a thread pool.
  timeout=30              -- writers wait for the database lock instead of
                             failing immediately under concurrent requests.
  WAL journal mode        -- readers do not block behind the writer.

Any other SQLAlchemy URL (e.g. postgresql+psycopg://) is passed through as-is.
"""

from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine
