"""
State Store Adapter: SyncRecords and RunStates in PostgreSQL.

Follows the DAL pattern of get_connection() + RealDictCursor. Every write is
an idempotent upsert or a compare-and-set on status, so a retried write after
a lost acknowledgement leaves the same end state.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Generator
from contextlib import AbstractContextManager, contextmanager
from datetime import UTC, datetime
from typing import Any

import psycopg2
from psycopg2.extras import RealDictCursor

from vwsync.db.connection import get_connection
from vwsync.sync.lock import SyncAlreadyRunningError
from vwsync.sync.models import RunState, RunStatus, SyncRecord, SyncStatus

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Sync was interrupted (service stopped/crashed before completion)"

# pg advisory lock key shared by every replica (ASCII "vwsync")
ADVISORY_LOCK_KEY = 0x767773796E63


class StateStore(ABC):
    """Durable record of previously synced Secrets and of passes."""

    @abstractmethod
    def list_records(self, namespace: str | None = None) -> list[SyncRecord]: ...

    @abstractmethod
    def get_record(self, namespace: str, secret_name: str) -> SyncRecord | None: ...

    @abstractmethod
    def upsert_record(self, record: SyncRecord) -> None:
        """Insert or update by (namespace, secret_name).

        A ``None`` content_hash keeps the stored hash.
        """

    @abstractmethod
    def create_run(self, run: RunState) -> str: ...

    @abstractmethod
    def finish_run(self, run: RunState) -> bool:
        """Move an InProgress run to its final status. False if it was not InProgress."""

    @abstractmethod
    def fail_interrupted_runs(self, message: str = INTERRUPTED_MESSAGE) -> list[str]:
        """Force every InProgress run to Failed. Returns the affected run ids."""

    @abstractmethod
    def list_runs(self, limit: int = 20, status: RunStatus | None = None) -> list[RunState]: ...

    @abstractmethod
    def run_lock(self, owner: str) -> AbstractContextManager[None]:
        """Exclusive lock shared by every process using this store.

        Raises SyncAlreadyRunningError when another holder has it.
        """


def _record_from_row(row: dict[str, Any]) -> SyncRecord:
    return SyncRecord(
        namespace=row["namespace"],
        secret_name=row["secret_name"],
        status=SyncStatus(row["status"]),
        content_hash=row.get("content_hash"),
        source_item_ids=list(row.get("source_item_ids") or []),
        key_count=row.get("key_count") or 0,
        last_error=row.get("last_error"),
        last_synced_at=row.get("last_synced_at"),
    )


def _run_from_row(row: dict[str, Any]) -> RunState:
    return RunState(
        id=str(row["id"]),
        started_at=row["started_at"],
        status=RunStatus(row["status"]),
        command=row.get("command") or "sync",
        dry_run=bool(row.get("dry_run")),
        interval_seconds=row.get("interval_seconds") or 0,
        ended_at=row.get("ended_at"),
        total_items=row.get("total_items") or 0,
        created=row.get("created") or 0,
        updated=row.get("updated") or 0,
        skipped=row.get("skipped") or 0,
        failed=row.get("failed") or 0,
        deleted=row.get("deleted") or 0,
        error_message=row.get("error_message"),
    )


class PostgresStateStore(StateStore):
    """StateStore over the ``sync_records`` and ``run_states`` tables."""

    # ─── Sync records ─────────────────────────────────────────────────

    def list_records(self, namespace: str | None = None) -> list[SyncRecord]:
        sql = "SELECT * FROM sync_records"
        values: list[Any] = []
        if namespace:
            sql += " WHERE namespace = %s"
            values.append(namespace)
        sql += " ORDER BY namespace, secret_name"
        with get_connection() as conn:
            cur = conn.cursor(cursor_factory=RealDictCursor)
            cur.execute(sql, values)
            return [_record_from_row(r) for r in cur.fetchall()]

    def get_record(self, namespace: str, secret_name: str) -> SyncRecord | None:
        with get_connection() as conn:
            cur = conn.cursor(cursor_factory=RealDictCursor)
            cur.execute(
                "SELECT * FROM sync_records WHERE namespace = %s AND secret_name = %s",
                (namespace, secret_name),
            )
            row = cur.fetchone()
            return _record_from_row(row) if row else None

    def upsert_record(self, record: SyncRecord) -> None:
        synced_at = record.last_synced_at or datetime.now(UTC)
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO sync_records (
                    namespace, secret_name, content_hash, status,
                    source_item_ids, key_count, last_error, last_synced_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (namespace, secret_name) DO UPDATE SET
                    content_hash = COALESCE(EXCLUDED.content_hash, sync_records.content_hash),
                    status = EXCLUDED.status,
                    source_item_ids = EXCLUDED.source_item_ids,
                    key_count = EXCLUDED.key_count,
                    last_error = EXCLUDED.last_error,
                    last_synced_at = EXCLUDED.last_synced_at
                """,
                (
                    record.namespace,
                    record.secret_name,
                    record.content_hash,
                    record.status.value,
                    record.source_item_ids,
                    record.key_count,
                    record.last_error,
                    synced_at,
                ),
            )

    # ─── Runs ─────────────────────────────────────────────────────────

    def create_run(self, run: RunState) -> str:
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO run_states (
                    id, command, started_at, status, dry_run, interval_seconds
                ) VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO NOTHING
                """,
                (
                    run.id,
                    str(run.command),
                    run.started_at,
                    run.status.value,
                    run.dry_run,
                    run.interval_seconds,
                ),
            )
        return run.id

    def finish_run(self, run: RunState) -> bool:
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                UPDATE run_states SET
                    status = %s, ended_at = %s, total_items = %s,
                    created = %s, updated = %s, skipped = %s,
                    failed = %s, deleted = %s, error_message = %s
                WHERE id = %s AND status = %s
                """,
                (
                    run.status.value,
                    run.ended_at or datetime.now(UTC),
                    run.total_items,
                    run.created,
                    run.updated,
                    run.skipped,
                    run.failed,
                    run.deleted,
                    run.error_message,
                    run.id,
                    RunStatus.IN_PROGRESS.value,
                ),
            )
            return cur.rowcount > 0

    def fail_interrupted_runs(self, message: str = INTERRUPTED_MESSAGE) -> list[str]:
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                "UPDATE run_states SET status = %s, ended_at = NOW(), error_message = %s "
                "WHERE status = %s RETURNING id",
                (RunStatus.FAILED.value, message, RunStatus.IN_PROGRESS.value),
            )
            rows = cur.fetchall()
        ids = [str(r[0]) for r in rows]
        for run_id in ids:
            logger.warning("Marked interrupted run %s as Failed", run_id)
        return ids

    def list_runs(self, limit: int = 20, status: RunStatus | None = None) -> list[RunState]:
        sql = "SELECT * FROM run_states"
        values: list[Any] = []
        if status:
            sql += " WHERE status = %s"
            values.append(status.value)
        sql += " ORDER BY started_at DESC LIMIT %s"
        values.append(limit)
        with get_connection() as conn:
            cur = conn.cursor(cursor_factory=RealDictCursor)
            cur.execute(sql, values)
            return [_run_from_row(r) for r in cur.fetchall()]

    # ─── Run lock ─────────────────────────────────────────────────────

    @contextmanager
    def run_lock(self, owner: str) -> Generator[None, None, None]:
        """Hold a session-level advisory lock on a dedicated connection.

        Every replica pointed at the same database contends for one key, so
        only one pass (or recovery) runs across hosts. PostgreSQL releases the
        lock if the holder's session dies.
        """
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute("SELECT pg_try_advisory_lock(%s)", (ADVISORY_LOCK_KEY,))
            row = cur.fetchone()
            if not row or not row[0]:
                raise SyncAlreadyRunningError(
                    f"Another instance holds the state store run lock ({owner} refused)"
                )
            logger.debug("Advisory lock %d taken by %s", ADVISORY_LOCK_KEY, owner)
            try:
                yield
            finally:
                try:
                    cur.execute("SELECT pg_advisory_unlock(%s)", (ADVISORY_LOCK_KEY,))
                except psycopg2.Error as e:
                    # Session is gone; the server already dropped the lock
                    logger.warning("Advisory unlock for %s failed: %s", owner, e)
