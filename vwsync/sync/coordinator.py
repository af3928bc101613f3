"""
Run Coordinator: one exclusive pass end-to-end, plus the continuous loop.

A pass: record RunState(InProgress) → list vault items → parse → merge →
snapshot cluster → reconcile → record RunState(Success|Failed). Only one
pass runs at a time, guarded in-process, by a lock file and by an advisory
lock in the state store shared by every replica.

On startup, ``recover()`` must be called before the first pass so that runs
left InProgress by a crash are closed out as Failed.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime

from vwsync.config import Config, get_config
from vwsync.sync import lock
from vwsync.sync.gateway import GatewayError, SecretGateway
from vwsync.sync.merger import merge, pass_order
from vwsync.sync.models import Command, RunResult, RunState, RunStatus
from vwsync.sync.parser import FieldParser, parse_items
from vwsync.sync.reconciler import ReconcileOptions, Reconciler
from vwsync.sync.resilience import CircuitOpenError
from vwsync.sync.store import StateStore
from vwsync.sync.vault import VaultError, VaultSource

logger = logging.getLogger(__name__)


class PassCancelled(Exception):
    """Cancellation arrived before any write was issued."""


class RunCoordinator:
    """Owns exclusivity, run bookkeeping and the interval loop."""

    def __init__(
        self,
        vault: VaultSource,
        gateway: SecretGateway,
        store: StateStore,
        config: Config | None = None,
    ):
        self.vault = vault
        self.gateway = gateway
        self.store = store
        self.config = config or get_config()
        self.parser = FieldParser(self.config.sync.fields)
        self._cancel = threading.Event()
        self.last_result: RunResult | None = None

    # ─── Lifecycle ────────────────────────────────────────────────────

    def recover(self) -> list[str]:
        """Close out runs left InProgress by an unclean shutdown.

        Skipped while another instance holds the lock, since its InProgress
        run is live.
        """
        try:
            with self._exclusive("recover"):
                ids = self.store.fail_interrupted_runs()
        except lock.SyncAlreadyRunningError as e:
            logger.info("Skipping interrupted-run recovery: %s", e)
            return []
        if ids:
            logger.warning("Recovered %d interrupted run(s)", len(ids))
        return ids

    def request_cancel(self) -> None:
        """Stop starting new targets; the in-flight batch finishes."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _check_cancel(self, phase: str) -> None:
        if self._cancel.is_set():
            raise PassCancelled(f"Cancelled during {phase}; no changes were made")

    # ─── One pass ─────────────────────────────────────────────────────

    def run_once(
        self,
        command: Command = Command.SYNC,
        namespace: str | None = None,
        dry_run: bool | None = None,
        wait: bool = False,
        interval: float | None = None,
    ) -> RunResult:
        """Run one exclusive pass.

        Raises SyncAlreadyRunningError if another pass holds a lock. ``wait``
        only blocks on the in-process guard; the lock file and the state store
        lock are always tried once. ``interval`` is recorded on the RunState
        when the pass is driven by the interval loop.
        """
        if command == Command.SYNC_NAMESPACE and not namespace:
            raise ValueError("sync-namespace requires a namespace")
        dry = self.config.sync.dry_run if dry_run is None else dry_run
        owner = f"{command}:{namespace}" if namespace else str(command)
        with self._exclusive(owner, wait=wait):
            result = self._run_locked(command, namespace, dry, interval)
        self.last_result = result
        return result

    @contextmanager
    def _exclusive(self, owner: str, wait: bool = False) -> Generator[None, None, None]:
        with lock.exclusive(self.config.sync.lock_dir, owner, wait=wait), self.store.run_lock(owner):
            yield

    def _run_locked(
        self, command: Command, namespace: str | None, dry_run: bool, interval: float | None = None
    ) -> RunResult:
        if interval is None and self.config.sync.continuous:
            interval = self.config.sync.interval_seconds
        started = datetime.now(UTC)
        run = RunState(
            id=str(uuid.uuid4()),
            started_at=started,
            command=command,
            dry_run=dry_run,
            interval_seconds=int(interval or 0),
        )
        result = RunResult(run_id=run.id, command=command, dry_run=dry_run, started_at=started)
        self.store.create_run(run)
        logger.info(
            "Starting %s%s (run %s)%s",
            command,
            f" for namespace {namespace}" if namespace else "",
            run.id,
            " [dry-run]" if dry_run else "",
        )

        try:
            self._execute(result, command, namespace, dry_run)
        except PassCancelled as e:
            logger.warning("%s", e)
            result.status = RunStatus.FAILED
            result.cancelled = True
            result.errors.append(str(e))
        except VaultError as e:
            logger.error("Vault unavailable, pass aborted: %s", e)
            result.status = RunStatus.FAILED
            result.errors.append(f"vault: {e}")
        except (GatewayError, CircuitOpenError) as e:
            logger.error("Cluster snapshot failed, pass aborted: %s", e)
            result.status = RunStatus.FAILED
            result.errors.append(f"cluster: {e}")
        except Exception as e:
            logger.error("Pass %s crashed: %s", run.id, e, exc_info=True)
            result.status = RunStatus.FAILED
            result.errors.append(str(e))
            self._finish(run, result)
            raise
        self._finish(run, result)
        return result

    def _execute(
        self, result: RunResult, command: Command, namespace: str | None, dry_run: bool
    ) -> None:
        items = self.vault.list_items()
        result.total_items = len(items)
        self._check_cancel("vault read")

        fragments, warnings, skipped = parse_items(pass_order(items), self.parser)
        result.warnings.extend(warnings)
        if skipped:
            logger.info("%d item(s) skipped (no namespaces or deleted)", skipped)
        self._check_cancel("parse")

        desired = merge(fragments)
        if namespace:
            desired = {k: d for k, d in desired.items() if k[0] == namespace}
        self._check_cancel("merge")

        reconciler = Reconciler(
            self.gateway,
            self.store,
            ReconcileOptions(
                dry_run=dry_run,
                delete_orphans=self.config.sync.delete_orphans or command == Command.CLEANUP,
                cleanup_only=command == Command.CLEANUP,
                namespace=namespace,
                max_workers=self.config.sync.max_workers,
            ),
        )
        previous = self.store.list_records(namespace)
        snapshot = reconciler.snapshot(desired, previous)
        self._check_cancel("snapshot")

        outcome = reconciler.reconcile(desired, previous, snapshot, cancel=self._cancel)
        result.targets = outcome.targets
        result.errors.extend(outcome.errors)
        result.cancelled = outcome.cancelled
        result.status = outcome.status

    def _finish(self, run: RunState, result: RunResult) -> None:
        result.ended_at = datetime.now(UTC)
        run.status = result.status
        run.ended_at = result.ended_at
        run.total_items = result.total_items
        run.created = result.created
        run.updated = result.updated
        run.skipped = result.skipped
        run.failed = result.failed
        run.deleted = result.deleted
        run.error_message = "; ".join(result.errors)[:4000] or None
        try:
            if not self.store.finish_run(run):
                logger.warning("Run %s was no longer InProgress when finishing", run.id)
        except Exception as e:
            logger.error("Failed to record end of run %s: %s", run.id, e)
        log_summary(result)

    # ─── Continuous loop ──────────────────────────────────────────────

    async def run_continuous(self, stop: asyncio.Event, interval: float | None = None) -> int:
        """Run a pass every ``interval`` seconds until ``stop`` is set.

        Setting ``stop`` ends the sleep immediately; an in-flight pass is
        asked to stop starting new targets and awaited. Returns the number of
        passes run.
        """
        interval = interval if interval is not None else self.config.sync.interval_seconds
        loop = asyncio.get_running_loop()
        passes = 0
        logger.info("Continuous sync every %ss", interval)
        while not stop.is_set():
            self._cancel.clear()
            task = loop.run_in_executor(None, self._tick, interval)
            stopper = asyncio.ensure_future(stop.wait())
            done, _ = await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
            if stopper in done and task not in done:
                logger.info("Shutdown requested, waiting for in-flight pass")
                self.request_cancel()
            await task
            stopper.cancel()
            passes += 1
            if stop.is_set():
                break
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except TimeoutError:
                pass
        logger.info("Continuous sync stopped after %d pass(es)", passes)
        return passes

    def _tick(self, interval: float | None = None) -> RunResult | None:
        try:
            return self.run_once(interval=interval)
        except lock.SyncAlreadyRunningError as e:
            logger.info("Skipping tick: %s", e)
        except Exception as e:
            logger.error("Sync tick failed: %s", e, exc_info=True)
        return None


def log_summary(result: RunResult) -> None:
    """Pass summary: overall status, per-namespace counts, then every warning and error."""
    logger.info(
        "Sync %s: %d items, %d created, %d updated, %d skipped, %d failed, %d deleted%s",
        result.status_text,
        result.total_items,
        result.created,
        result.updated,
        result.skipped,
        result.failed,
        result.deleted,
        " [dry-run]" if result.dry_run else "",
    )
    for ns, s in result.namespaces().items():
        logger.info(
            "  %s: created=%d updated=%d skipped=%d failed=%d deleted=%d orphaned-but-kept=%d retired=%d",
            ns, s.created, s.updated, s.skipped, s.failed, s.deleted, s.orphans_kept, s.retired,
        )
    for w in result.warnings:
        logger.warning("  warning: %s", w)
    for e in result.errors:
        logger.error("  error: %s", e)
