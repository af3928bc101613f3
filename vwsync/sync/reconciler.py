"""
Reconciliation Engine: diff desired Secrets against the cluster and apply.

Per (namespace, name) target the engine decides one action:

    absent                              → create
    present, hash and data unchanged    → skip (no write)
    present, changed                    → update (unowned keys/labels kept)
    not desired, owned, cleanup on      → delete
    not desired, owned, cleanup off     → keep, reported orphaned-but-kept
    not desired, record only            → retire the record (no write)
    namespace missing / name not owned  → failed

Only Secrets carrying the ownership label are ever written or deleted.
Targets run in (namespace, name) order, in bounded batches across a worker
pool; a cancellation request lets the current batch finish and starts no
new target.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime

from vwsync.sync.gateway import GatewayError, SecretGateway, SecretNotFoundError
from vwsync.sync.merger import managed_keys_value
from vwsync.sync.models import (
    HASH_ANNOTATION,
    MANAGED_KEYS_ANNOTATION,
    OWNERSHIP_LABELS,
    OWNERSHIP_SELECTOR,
    DesiredSecret,
    LiveSecret,
    Outcome,
    RunResult,
    RunStatus,
    SyncRecord,
    SyncStatus,
    TargetResult,
)
from vwsync.sync.store import StateStore

logger = logging.getLogger(__name__)

ORPHAN_REMOVED_MESSAGE = "Secret removed - no longer configured in Vaultwarden"
ALREADY_ABSENT_MESSAGE = "Secret already absent - no longer configured in Vaultwarden"
NOT_OWNED_MESSAGE = "Secret exists and is not managed by vaultwarden-k8s-sync"

_HASH_RE = re.compile(r"^[0-9a-f]{64}$")


class InvariantError(Exception):
    """Internal inconsistency; the pass must not continue."""


@dataclass
class ReconcileOptions:
    dry_run: bool = False
    delete_orphans: bool = True
    cleanup_only: bool = False
    namespace: str | None = None
    max_workers: int = 4


@dataclass
class ClusterSnapshot:
    """Live state for every namespace in scope, read before any write."""

    namespaces: dict[str, bool] = field(default_factory=dict)
    managed: dict[tuple[str, str], LiveSecret] = field(default_factory=dict)
    unmanaged: dict[tuple[str, str], LiveSecret] = field(default_factory=dict)


@dataclass
class Action:
    kind: Outcome
    namespace: str
    name: str
    desired: DesiredSecret | None = None
    live: LiveSecret | None = None
    reason: str = ""
    error: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)

    def require_desired(self) -> DesiredSecret:
        if self.desired is None:
            raise InvariantError(f"{self.namespace}/{self.name}: {self.kind} action has no desired secret")
        return self.desired


def _managed_keys(live: LiveSecret) -> list[str]:
    raw = live.annotations.get(MANAGED_KEYS_ANNOTATION)
    if not raw:
        return []
    try:
        keys = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Unparsable managed-keys annotation on %s/%s", live.namespace, live.name)
        return []
    return [k for k in keys if isinstance(k, str)] if isinstance(keys, list) else []


def change_reason(desired: DesiredSecret, live: LiveSecret) -> str | None:
    """Why ``live`` needs an update, or None when it is up to date."""
    stale = set(_managed_keys(live)) - set(desired.data)
    content_changed = any(live.data.get(k) != v for k, v in desired.data.items()) or any(
        k in live.data for k in stale
    )
    old_hash = live.content_hash
    hash_changed = old_hash != desired.content_hash
    if content_changed and hash_changed:
        return "content+metadata"
    if content_changed:
        return "content"
    if hash_changed:
        return "initial-hash" if not old_hash else "metadata"
    return None


def build_created(desired: DesiredSecret) -> LiveSecret:
    return LiveSecret(
        namespace=desired.namespace,
        name=desired.name,
        data=dict(desired.data),
        labels={**desired.labels, **OWNERSHIP_LABELS},
        annotations={**desired.annotations, HASH_ANNOTATION: desired.content_hash},
    )


def build_updated(desired: DesiredSecret, live: LiveSecret) -> LiveSecret:
    """Overlay desired state on ``live``, keeping keys and labels we never owned."""
    previously_managed = set(_managed_keys(live))
    data = {k: v for k, v in live.data.items() if k not in previously_managed}
    data.update(desired.data)
    return LiveSecret(
        namespace=live.namespace,
        name=live.name,
        data=data,
        labels={**live.labels, **desired.labels, **OWNERSHIP_LABELS},
        annotations={**live.annotations, **desired.annotations, HASH_ANNOTATION: desired.content_hash},
        type=live.type,
    )


class Reconciler:
    """Plans and executes the action set for one pass."""

    def __init__(self, gateway: SecretGateway, store: StateStore, options: ReconcileOptions | None = None):
        self.gateway = gateway
        self.store = store
        self.options = options or ReconcileOptions()
        self._errors: list[str] = []
        self._errors_lock = threading.Lock()

    # ─── Scope & snapshot ─────────────────────────────────────────────

    def _in_scope(self, namespace: str) -> bool:
        return self.options.namespace is None or namespace == self.options.namespace

    def scope(self, desired: dict[tuple[str, str], DesiredSecret], previous: list[SyncRecord]) -> list[str]:
        namespaces = {ns for ns, _ in desired}
        namespaces |= {r.namespace for r in previous if r.status == SyncStatus.ACTIVE}
        return sorted(ns for ns in namespaces if self._in_scope(ns))

    def snapshot(
        self, desired: dict[tuple[str, str], DesiredSecret], previous: list[SyncRecord]
    ) -> ClusterSnapshot:
        """Read live state. Raises GatewayError if the cluster cannot be read."""
        snap = ClusterSnapshot()
        for ns in self.scope(desired, previous):
            exists = self.gateway.namespace_exists(ns)
            snap.namespaces[ns] = exists
            if not exists:
                logger.warning("Namespace %s does not exist", ns)
                continue
            for secret in self.gateway.list_secrets(ns, OWNERSHIP_SELECTOR):
                if secret.is_managed:
                    snap.managed[(ns, secret.name)] = secret

        for key in sorted(desired):
            ns, name = key
            if not snap.namespaces.get(ns) or key in snap.managed:
                continue
            existing = self.gateway.get_secret(ns, name)
            if existing is None:
                continue
            if existing.is_managed:
                snap.managed[key] = existing
            else:
                snap.unmanaged[key] = existing
        logger.debug(
            "Snapshot: %d namespaces, %d managed secrets, %d unmanaged name clashes",
            len(snap.namespaces),
            len(snap.managed),
            len(snap.unmanaged),
        )
        return snap

    # ─── Planning ─────────────────────────────────────────────────────

    @staticmethod
    def check_invariants(desired: dict[tuple[str, str], DesiredSecret]) -> None:
        for key, d in desired.items():
            if key != d.key:
                raise InvariantError(f"desired secret filed under {key} but named {d.key}")
            if not _HASH_RE.match(d.content_hash):
                raise InvariantError(f"{d.namespace}/{d.name}: malformed content hash")
            if d.annotations.get(MANAGED_KEYS_ANNOTATION) != managed_keys_value(d.data):
                raise InvariantError(f"{d.namespace}/{d.name}: managed-keys annotation out of sync")

    def plan(
        self,
        desired: dict[tuple[str, str], DesiredSecret],
        previous: list[SyncRecord],
        live: ClusterSnapshot,
    ) -> list[Action]:
        """Pure diff of desired vs. live + previous state, in (namespace, name) order."""
        self.check_invariants(desired)
        opts = self.options
        records = {
            (r.namespace, r.secret_name): r for r in previous if self._in_scope(r.namespace)
        }
        wanted = {k: d for k, d in desired.items() if self._in_scope(k[0])}
        keys = set(wanted) | {k for k in live.managed if self._in_scope(k[0])}
        keys |= {k for k, r in records.items() if r.status == SyncStatus.ACTIVE}

        actions: list[Action] = []
        for key in sorted(keys):
            ns, name = key
            d = wanted.get(key)
            current = live.managed.get(key)
            record = records.get(key)

            if d is not None:
                if opts.cleanup_only:
                    continue
                if not live.namespaces.get(ns, False):
                    actions.append(
                        Action(Outcome.FAILED, ns, name, d, error=f"Namespace '{ns}' does not exist")
                    )
                elif key in live.unmanaged:
                    actions.append(Action(Outcome.FAILED, ns, name, d, error=NOT_OWNED_MESSAGE))
                elif current is None:
                    was_active = record is not None and record.status == SyncStatus.ACTIVE
                    reason = "recreated" if was_active else "new"
                    actions.append(Action(Outcome.CREATED, ns, name, d, reason=reason))
                else:
                    reason = change_reason(d, current)
                    if reason is None:
                        actions.append(Action(Outcome.SKIPPED, ns, name, d, current, "up-to-date"))
                    else:
                        actions.append(Action(Outcome.UPDATED, ns, name, d, current, reason))
                continue

            # Not desired: orphan handling, owned Secrets only
            if current is not None:
                if opts.delete_orphans:
                    actions.append(Action(Outcome.DELETED, ns, name, live=current, reason="orphan"))
                else:
                    actions.append(Action(Outcome.ORPHAN_KEPT, ns, name, live=current, reason="orphan"))
            else:
                # Active record, Secret already gone: close the record, write nothing
                actions.append(Action(Outcome.RETIRED, ns, name, reason="already absent"))
        return actions

    # ─── Execution ────────────────────────────────────────────────────

    def _note_error(self, message: str) -> None:
        with self._errors_lock:
            self._errors.append(message)

    def _record(self, record: SyncRecord) -> None:
        if self.options.dry_run:
            return
        try:
            self.store.upsert_record(record)
        except Exception as e:
            logger.error(
                "Failed to record state for %s/%s: %s", record.namespace, record.secret_name, e
            )
            self._note_error(f"state store: {record.namespace}/{record.secret_name}: {e}")

    def _write(self, action: Action) -> Outcome:
        if action.kind == Outcome.CREATED:
            d = action.require_desired()
            self.gateway.create_secret(build_created(d))
            return Outcome.CREATED
        if action.kind == Outcome.UPDATED:
            d = action.require_desired()
            if action.live is None:
                raise InvariantError(f"{action.namespace}/{action.name}: update planned without a live secret")
            try:
                self.gateway.update_secret(build_updated(d, action.live))
            except SecretNotFoundError:
                logger.info(
                    "Secret %s/%s vanished during update, creating", action.namespace, action.name
                )
                self.gateway.create_secret(build_created(d))
                return Outcome.CREATED
            return Outcome.UPDATED
        if action.kind == Outcome.DELETED:
            if not self.gateway.delete_secret(action.namespace, action.name):
                logger.debug("Secret %s/%s already gone", action.namespace, action.name)
        return action.kind

    def apply(self, action: Action) -> TargetResult:
        """Execute one action and record its outcome. Never raises for target failures."""
        d = action.desired
        item_ids = list(d.item_ids) if d else []
        result = TargetResult(action.namespace, action.name, action.kind, action.reason, action.error, item_ids)
        now = datetime.now(UTC)

        if action.kind == Outcome.FAILED:
            logger.error("Target %s/%s failed: %s", action.namespace, action.name, action.error)
            self._record(
                SyncRecord(
                    action.namespace, action.name, SyncStatus.FAILED,
                    source_item_ids=item_ids, key_count=len(d.data) if d else 0,
                    last_error=action.error, last_synced_at=now,
                )
            )
            return result

        if action.kind == Outcome.ORPHAN_KEPT:
            logger.info("Orphaned secret %s/%s kept (orphan cleanup disabled)", action.namespace, action.name)
            return result

        if action.kind == Outcome.RETIRED:
            logger.info("Secret %s/%s already absent, closing its record", action.namespace, action.name)
            self._record(
                SyncRecord(
                    action.namespace, action.name, SyncStatus.DELETED,
                    last_error=ALREADY_ABSENT_MESSAGE, last_synced_at=now,
                )
            )
            return result

        if self.options.dry_run:
            if action.kind != Outcome.SKIPPED:
                logger.info("[dry-run] Would %s %s/%s (%s)", action.kind.rstrip("d"), action.namespace, action.name, action.reason)
            return result

        try:
            result.outcome = self._write(action)
        except GatewayError as e:
            logger.error("Target %s/%s %s failed: %s", action.namespace, action.name, action.kind, e)
            result.outcome = Outcome.FAILED
            result.error = str(e)
        if result.outcome == Outcome.CREATED and action.kind == Outcome.UPDATED:
            result.reason = "recreated"

        if result.outcome == Outcome.FAILED:
            self._record(
                SyncRecord(
                    action.namespace, action.name, SyncStatus.FAILED,
                    source_item_ids=item_ids, key_count=len(d.data) if d else 0,
                    last_error=result.error, last_synced_at=now,
                )
            )
        elif result.outcome == Outcome.DELETED:
            logger.info("Deleted orphaned secret %s/%s", action.namespace, action.name)
            self._record(
                SyncRecord(
                    action.namespace, action.name, SyncStatus.DELETED,
                    last_error=ORPHAN_REMOVED_MESSAGE, last_synced_at=now,
                )
            )
        else:
            d = action.require_desired()
            if result.outcome != Outcome.SKIPPED:
                logger.info(
                    "Secret %s/%s %s (%s), %d keys",
                    action.namespace, action.name, result.outcome, result.reason, len(d.data),
                )
            self._record(
                SyncRecord(
                    action.namespace, action.name, SyncStatus.ACTIVE,
                    content_hash=d.content_hash, source_item_ids=item_ids,
                    key_count=len(d.data), last_synced_at=now,
                )
            )
        return result

    def execute(self, actions: list[Action], cancel: threading.Event | None = None) -> RunResult:
        """Apply actions in order, ``max_workers`` at a time."""
        result = RunResult(dry_run=self.options.dry_run)
        self._errors = []
        batch_size = max(1, self.options.max_workers)
        with ThreadPoolExecutor(max_workers=batch_size, thread_name_prefix="reconcile") as pool:
            for start in range(0, len(actions), batch_size):
                if cancel is not None and cancel.is_set():
                    result.cancelled = True
                    result.errors.append(
                        f"Cancelled after {start} of {len(actions)} targets; remaining targets not started"
                    )
                    logger.warning("Reconcile cancelled after %d/%d targets", start, len(actions))
                    break
                batch = actions[start : start + batch_size]
                result.targets.extend(pool.map(self.apply, batch))
        result.errors.extend(self._errors)
        for t in result.targets:
            if t.outcome == Outcome.FAILED and t.error:
                result.errors.append(f"{t.namespace}/{t.name}: {t.error}")
        result.status = RunStatus.FAILED if result.cancelled else RunStatus.SUCCESS
        return result

    def reconcile(
        self,
        desired: dict[tuple[str, str], DesiredSecret],
        previous: list[SyncRecord],
        live: ClusterSnapshot,
        cancel: threading.Event | None = None,
    ) -> RunResult:
        """Plan then execute against an already-read snapshot."""
        return self.execute(self.plan(desired, previous, live), cancel)
