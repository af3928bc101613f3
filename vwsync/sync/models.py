"""
Data models for the reconciliation pipeline.

All models are plain dataclasses, no ORM. Vault input is frozen (never
mutated during a pass); derived and persisted records are mutable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
CREATED_BY_LABEL = "app.kubernetes.io/created-by"
MANAGER_NAME = "vaultwarden-k8s-sync"
HASH_ANNOTATION = "vaultwarden-k8s-sync/hash"
MANAGED_KEYS_ANNOTATION = "vaultwarden-k8s-sync/managed-keys"

OWNERSHIP_LABELS = {
    MANAGED_BY_LABEL: MANAGER_NAME,
    CREATED_BY_LABEL: MANAGER_NAME,
}
OWNERSHIP_SELECTOR = f"{MANAGED_BY_LABEL}={MANAGER_NAME}"


class ItemType(StrEnum):
    LOGIN = "login"
    SECURE_NOTE = "secure_note"
    CARD = "card"
    IDENTITY = "identity"
    SSH_KEY = "ssh_key"


class SyncStatus(StrEnum):
    ACTIVE = "Active"
    FAILED = "Failed"
    DELETED = "Deleted"


class RunStatus(StrEnum):
    IN_PROGRESS = "InProgress"
    SUCCESS = "Success"
    FAILED = "Failed"


class Outcome(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"
    DELETED = "deleted"
    ORPHAN_KEPT = "orphaned-but-kept"
    RETIRED = "retired"  # record closed, Secret was already gone


class Command(StrEnum):
    SYNC = "sync"
    SYNC_NAMESPACE = "sync-namespace"
    CLEANUP = "cleanup"


# ─── Vault input ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class CustomField:
    name: str
    value: str
    hidden: bool = False


@dataclass(frozen=True)
class LoginInfo:
    username: str = ""
    password: str = ""
    uris: tuple[str, ...] = ()


@dataclass(frozen=True)
class SshKeyInfo:
    private_key: str = ""
    public_key: str = ""
    fingerprint: str = ""


@dataclass(frozen=True)
class VaultItem:
    """One decrypted vault record, as returned by the vault boundary."""

    id: str
    name: str
    type: ItemType = ItemType.LOGIN
    notes: str = ""
    login: LoginInfo | None = None
    ssh_key: SshKeyInfo | None = None
    # Card/identity attributes as ordered (key, value) pairs, e.g. ("card-number", "4111...")
    details: tuple[tuple[str, str], ...] = ()
    fields: tuple[CustomField, ...] = ()
    revision_date: str = ""
    deleted: bool = False

    def field_value(self, *names: str) -> str | None:
        """First non-empty custom field value matching any name (case-insensitive)."""
        for name in names:
            wanted = name.lower()
            for f in self.fields:
                if f.name.lower() == wanted and f.value:
                    return f.value
        return None


# ─── Derived ──────────────────────────────────────────────────────────


@dataclass
class SecretFragment:
    """Per-item, pre-merge contribution to one or more Secrets."""

    item_id: str
    item_name: str
    order: int  # position of the source item in the pass order
    namespaces: tuple[str, ...]
    secret_name: str
    data: dict[str, str]
    item_hash: str
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class ParseResult:
    fragments: list[SecretFragment] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    skipped: bool = False


@dataclass
class DesiredSecret:
    """Fully merged, hashed target state for one (namespace, name) pair."""

    namespace: str
    name: str
    data: dict[str, str]
    content_hash: str
    item_ids: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)


@dataclass
class LiveSecret:
    """A Secret as read from the cluster, values decoded to str."""

    namespace: str
    name: str
    data: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    type: str = "Opaque"

    @property
    def is_managed(self) -> bool:
        return self.labels.get(MANAGED_BY_LABEL) == MANAGER_NAME

    @property
    def content_hash(self) -> str | None:
        return self.annotations.get(HASH_ANNOTATION)


# ─── Persisted state ──────────────────────────────────────────────────


@dataclass
class SyncRecord:
    namespace: str
    secret_name: str
    status: SyncStatus
    content_hash: str | None = None
    source_item_ids: list[str] = field(default_factory=list)
    key_count: int = 0
    last_error: str | None = None
    last_synced_at: datetime | None = None


@dataclass
class RunState:
    id: str
    started_at: datetime
    status: RunStatus = RunStatus.IN_PROGRESS
    command: str = Command.SYNC
    dry_run: bool = False
    interval_seconds: int = 0
    ended_at: datetime | None = None
    total_items: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    deleted: int = 0
    error_message: str | None = None


# ─── Results ──────────────────────────────────────────────────────────


@dataclass
class TargetResult:
    namespace: str
    name: str
    outcome: Outcome
    reason: str = ""
    error: str | None = None
    item_ids: list[str] = field(default_factory=list)


@dataclass
class NamespaceSummary:
    name: str
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    deleted: int = 0
    orphans_kept: int = 0
    retired: int = 0

    def add(self, outcome: Outcome) -> None:
        if outcome == Outcome.CREATED:
            self.created += 1
        elif outcome == Outcome.UPDATED:
            self.updated += 1
        elif outcome == Outcome.SKIPPED:
            self.skipped += 1
        elif outcome == Outcome.FAILED:
            self.failed += 1
        elif outcome == Outcome.DELETED:
            self.deleted += 1
        elif outcome == Outcome.ORPHAN_KEPT:
            self.orphans_kept += 1
        elif outcome == Outcome.RETIRED:
            self.retired += 1


@dataclass
class RunResult:
    """Outcome of one reconciliation pass."""

    run_id: str = ""
    command: str = Command.SYNC
    dry_run: bool = False
    status: RunStatus = RunStatus.IN_PROGRESS
    started_at: datetime | None = None
    ended_at: datetime | None = None
    total_items: int = 0
    targets: list[TargetResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False

    def count(self, outcome: Outcome) -> int:
        return sum(1 for t in self.targets if t.outcome == outcome)

    @property
    def created(self) -> int:
        return self.count(Outcome.CREATED)

    @property
    def updated(self) -> int:
        return self.count(Outcome.UPDATED)

    @property
    def skipped(self) -> int:
        return self.count(Outcome.SKIPPED)

    @property
    def failed(self) -> int:
        return self.count(Outcome.FAILED)

    @property
    def deleted(self) -> int:
        return self.count(Outcome.DELETED)

    @property
    def orphans_kept(self) -> int:
        return self.count(Outcome.ORPHAN_KEPT)

    @property
    def retired(self) -> int:
        return self.count(Outcome.RETIRED)

    @property
    def writes(self) -> int:
        return self.created + self.updated + self.deleted

    def namespaces(self) -> dict[str, NamespaceSummary]:
        """Per-namespace counts, ordered by namespace name."""
        summaries: dict[str, NamespaceSummary] = {}
        for t in sorted(self.targets, key=lambda t: (t.namespace, t.name)):
            summaries.setdefault(t.namespace, NamespaceSummary(name=t.namespace)).add(t.outcome)
        return summaries

    @property
    def status_text(self) -> str:
        if self.status == RunStatus.FAILED and self.writes + self.skipped == 0:
            return "FAILED"
        if self.failed > 0 or self.status == RunStatus.FAILED:
            return "PARTIAL"
        if self.writes > 0:
            return "SUCCESS"
        return "UP-TO-DATE"

    @property
    def exit_code(self) -> int:
        return 0 if self.status == RunStatus.SUCCESS and self.failed == 0 else 1
