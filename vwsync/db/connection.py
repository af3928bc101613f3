"""
Pooled PostgreSQL connections for the state store.

The reconciler records SyncRecords from its worker threads, so the pool is a
ThreadedConnectionPool shared by the whole process. Each ``get_connection()``
block is one transaction.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Generator
from contextlib import contextmanager

import psycopg2
import psycopg2.pool

from vwsync.config import get_config

logger = logging.getLogger(__name__)

_pool: psycopg2.pool.ThreadedConnectionPool | None = None
_pool_lock = threading.Lock()


def get_pool() -> psycopg2.pool.ThreadedConnectionPool:
    """The process-wide pool, created on first use.

    Sized for every reconcile worker recording at once, plus the
    connection holding the run lock and the coordinator's own bookkeeping.
    """
    global _pool
    with _pool_lock:
        if _pool is None or _pool.closed:
            cfg = get_config()
            db = cfg.db
            maxconn = cfg.sync.max_workers + 2
            logger.info(
                "Connecting to state store %s:%s/%s (pool of %d)",
                db.host or "local socket",
                db.port,
                db.name,
                maxconn,
            )
            try:
                _pool = psycopg2.pool.ThreadedConnectionPool(
                    1,
                    maxconn,
                    connect_timeout=max(1, int(cfg.sync.timeout_seconds)),
                    **db.dict,
                )
            except psycopg2.OperationalError as e:
                raise ConnectionError(
                    f"State store unreachable at {db.host or 'local socket'}:{db.port}/{db.name}: {e}"
                    " (check DATABASE__* settings)"
                ) from e
        return _pool


@contextmanager
def get_connection() -> Generator[psycopg2.extensions.connection, None, None]:
    """One transaction on a pooled connection.

    Commits on clean exit, rolls back and re-raises on exception.
    """
    pool = get_pool()
    conn = pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


def close_pool() -> None:
    """Release every pooled connection; the next get_pool() reconnects."""
    global _pool
    with _pool_lock:
        if _pool is not None and not _pool.closed:
            _pool.closeall()
        _pool = None
