"""Tests for the reconciliation engine: plan/execute against an in-memory cluster."""

from __future__ import annotations

import json
import threading

import pytest

from vwsync.sync.gateway import GatewayError
from vwsync.sync.merger import merge, pass_order
from vwsync.sync.models import (
    HASH_ANNOTATION,
    MANAGED_BY_LABEL,
    MANAGED_KEYS_ANNOTATION,
    MANAGER_NAME,
    OWNERSHIP_LABELS,
    LiveSecret,
    Outcome,
    RunStatus,
    SyncRecord,
    SyncStatus,
)
from vwsync.sync.parser import FieldParser, parse_items
from vwsync.sync.reconciler import (
    ALREADY_ABSENT_MESSAGE,
    NOT_OWNED_MESSAGE,
    ORPHAN_REMOVED_MESSAGE,
    Action,
    InvariantError,
    ReconcileOptions,
    Reconciler,
    build_updated,
    change_reason,
)
from vwsync.sync.tests.fakes import make_item


def desired_from(*items):
    fragments, _, _ = parse_items(pass_order(list(items)), FieldParser())
    return merge(fragments)


def run_pass(gateway, store, items, **opts):
    desired = desired_from(*items)
    reconciler = Reconciler(gateway, store, ReconcileOptions(**opts))
    previous = store.list_records(opts.get("namespace"))
    snapshot = reconciler.snapshot(desired, previous)
    return reconciler.reconcile(desired, previous, snapshot)


class TestCreate:
    def test_creates_with_labels_and_hash(self, gateway, store):
        result = run_pass(gateway, store, [make_item()])
        assert result.created == 1
        secret = gateway.secrets[("prod", "db")]
        assert secret.data == {"db": "p1"}
        assert secret.labels[MANAGED_BY_LABEL] == MANAGER_NAME
        assert len(secret.annotations[HASH_ANNOTATION]) == 64
        assert json.loads(secret.annotations[MANAGED_KEYS_ANNOTATION]) == ["db"]

    def test_records_active(self, gateway, store):
        run_pass(gateway, store, [make_item()])
        record = store.get_record("prod", "db")
        assert record.status == SyncStatus.ACTIVE
        assert record.source_item_ids == ["id-db"]
        assert record.key_count == 1
        assert record.content_hash == gateway.secrets[("prod", "db")].content_hash

    def test_recreates_when_active_record_but_secret_gone(self, gateway, store):
        run_pass(gateway, store, [make_item()])
        del gateway.secrets[("prod", "db")]
        result = run_pass(gateway, store, [make_item()])
        assert result.targets[0].outcome == Outcome.CREATED
        assert result.targets[0].reason == "recreated"
        assert ("prod", "db") in gateway.secrets


class TestIdempotence:
    def test_second_run_issues_no_writes(self, gateway, store):
        items = [make_item(), make_item(name="api", namespaces="prod,staging", username="u")]
        first = run_pass(gateway, store, items)
        assert first.created == 3
        writes_before = len(gateway.writes)

        second = run_pass(gateway, store, items)
        assert second.skipped == 3
        assert second.writes == 0
        assert len(gateway.writes) == writes_before

    def test_input_order_irrelevant(self, gateway, store):
        a, b = make_item(name="a"), make_item(name="b")
        run_pass(gateway, store, [a, b])
        result = run_pass(gateway, store, [b, a])
        assert result.writes == 0


class TestUpdate:
    def test_password_change_updates_hash(self, gateway, store):
        run_pass(gateway, store, [make_item(password="p1")])
        old_hash = gateway.secrets[("prod", "db")].content_hash

        result = run_pass(gateway, store, [make_item(password="p2")])
        assert result.updated == 1
        secret = gateway.secrets[("prod", "db")]
        assert secret.data["db"] == "p2"
        assert secret.content_hash != old_hash
        assert result.targets[0].reason == "content+metadata"

    def test_metadata_only_change(self, gateway, store):
        run_pass(gateway, store, [make_item(notes="")])
        result = run_pass(gateway, store, [make_item(notes="rotated quarterly")])
        assert result.updated == 1
        assert result.targets[0].reason == "metadata"

    def test_data_drift_repaired(self, gateway, store):
        run_pass(gateway, store, [make_item()])
        gateway.secrets[("prod", "db")].data["db"] = "tampered"
        result = run_pass(gateway, store, [make_item()])
        assert result.targets[0].reason == "content"
        assert gateway.secrets[("prod", "db")].data["db"] == "p1"

    def test_preserves_foreign_keys_and_labels(self, gateway, store):
        run_pass(gateway, store, [make_item(username="admin")])
        live = gateway.secrets[("prod", "db")]
        live.data["added-by-hand"] = "keep-me"
        live.labels["team"] = "payments"
        live.annotations["note"] = "hand-written"

        run_pass(gateway, store, [make_item(password="p2")])
        secret = gateway.secrets[("prod", "db")]
        assert secret.data == {"db": "p2", "added-by-hand": "keep-me"}
        assert secret.labels["team"] == "payments"
        assert secret.labels[MANAGED_BY_LABEL] == MANAGER_NAME
        assert secret.annotations["note"] == "hand-written"

    def test_update_404_falls_back_to_create(self, gateway, store):
        run_pass(gateway, store, [make_item(password="p1")])
        desired = desired_from(make_item(password="p2"))
        reconciler = Reconciler(gateway, store)
        snapshot = reconciler.snapshot(desired, store.list_records())
        del gateway.secrets[("prod", "db")]  # vanishes between snapshot and write

        result = reconciler.reconcile(desired, store.list_records(), snapshot)
        assert result.targets[0].outcome == Outcome.CREATED
        assert gateway.secrets[("prod", "db")].data["db"] == "p2"

    def test_build_updated_drops_stale_managed_keys(self):
        live = LiveSecret(
            "prod",
            "db",
            data={"old": "1", "mine": "x", "theirs": "y"},
            labels=dict(OWNERSHIP_LABELS),
            annotations={MANAGED_KEYS_ANNOTATION: '["mine", "old"]', HASH_ANNOTATION: "0" * 64},
            type="kubernetes.io/basic-auth",
        )
        d = desired_from(make_item())[("prod", "db")]
        body = build_updated(d, live)
        assert body.data == {"theirs": "y", "db": "p1"}
        assert body.type == "kubernetes.io/basic-auth"
        assert body.annotations[HASH_ANNOTATION] == d.content_hash

    def test_change_reason_initial_hash(self):
        d = desired_from(make_item())[("prod", "db")]
        live = LiveSecret("prod", "db", data={"db": "p1"}, labels=dict(OWNERSHIP_LABELS))
        assert change_reason(d, live) == "initial-hash"


class TestOrphans:
    def test_deleted_item_removes_secret(self, gateway, store):
        run_pass(gateway, store, [make_item()])
        result = run_pass(gateway, store, [])
        assert result.deleted == 1
        assert ("prod", "db") not in gateway.secrets
        record = store.get_record("prod", "db")
        assert record.status == SyncStatus.DELETED
        assert record.last_error == ORPHAN_REMOVED_MESSAGE

    def test_orphan_kept_when_cleanup_disabled(self, gateway, store):
        run_pass(gateway, store, [make_item()])
        result = run_pass(gateway, store, [], delete_orphans=False)
        assert result.orphans_kept == 1
        assert result.deleted == 0
        assert ("prod", "db") in gateway.secrets
        assert store.get_record("prod", "db").status == SyncStatus.ACTIVE

    def test_unlabeled_secret_never_deleted(self, gateway, store):
        gateway.add(LiveSecret("prod", "db", data={"db": "theirs"}))
        store.upsert_record(SyncRecord("prod", "db", SyncStatus.ACTIVE))
        run_pass(gateway, store, [])
        assert gateway.secrets[("prod", "db")].data == {"db": "theirs"}
        assert ("delete", "prod", "db") not in gateway.calls

    def test_unlabeled_secret_at_desired_name_fails(self, gateway, store):
        gateway.add(LiveSecret("prod", "db", data={"db": "theirs"}, labels={"team": "x"}))
        result = run_pass(gateway, store, [make_item()])
        assert result.failed == 1
        assert result.targets[0].error == NOT_OWNED_MESSAGE
        assert gateway.secrets[("prod", "db")].data == {"db": "theirs"}
        assert gateway.writes == []
        assert store.get_record("prod", "db").status == SyncStatus.FAILED

    def test_labeled_secret_unknown_to_store_is_orphan(self, gateway, store):
        gateway.add(LiveSecret("prod", "stray", data={"k": "v"}, labels=dict(OWNERSHIP_LABELS)))
        result = run_pass(gateway, store, [make_item()])
        assert ("prod", "stray") not in gateway.secrets
        assert result.deleted == 1

    def test_active_record_already_absent_retired(self, gateway, store):
        run_pass(gateway, store, [make_item()])
        del gateway.secrets[("prod", "db")]
        result = run_pass(gateway, store, [])
        assert result.deleted == 0
        assert result.retired == 1
        assert result.writes == 0
        assert result.namespaces()["prod"].retired == 1
        assert ("delete", "prod", "db") not in gateway.calls
        record = store.get_record("prod", "db")
        assert record.status == SyncStatus.DELETED
        assert record.last_error == ALREADY_ABSENT_MESSAGE

    def test_already_absent_retired_even_without_orphan_cleanup(self, gateway, store):
        run_pass(gateway, store, [make_item()])
        del gateway.secrets[("prod", "db")]
        result = run_pass(gateway, store, [], delete_orphans=False)
        assert result.retired == 1
        assert result.orphans_kept == 0
        assert store.get_record("prod", "db").status == SyncStatus.DELETED

    def test_already_absent_dry_run_keeps_record(self, gateway, store):
        run_pass(gateway, store, [make_item()])
        del gateway.secrets[("prod", "db")]
        result = run_pass(gateway, store, [], dry_run=True)
        assert result.retired == 1
        assert result.deleted == 0
        assert store.get_record("prod", "db").status == SyncStatus.ACTIVE


class TestFailures:
    def test_missing_namespace_is_per_target(self, gateway, store):
        items = [make_item(name="a", namespaces="nowhere"), make_item(name="b")]
        result = run_pass(gateway, store, items)
        outcomes = {(t.namespace, t.name): t for t in result.targets}
        assert outcomes[("nowhere", "a")].outcome == Outcome.FAILED
        assert "does not exist" in outcomes[("nowhere", "a")].error
        assert outcomes[("prod", "b")].outcome == Outcome.CREATED
        assert result.status == RunStatus.SUCCESS
        assert result.exit_code == 1
        assert result.status_text == "PARTIAL"

    def test_write_error_isolated(self, gateway, store):
        gateway.fail_on[("prod", "a")] = "create"
        result = run_pass(gateway, store, [make_item(name="a"), make_item(name="b")])
        assert result.failed == 1
        assert result.created == 1
        record = store.get_record("prod", "a")
        assert record.status == SyncStatus.FAILED
        assert "rejected" in record.last_error
        assert any("prod/a" in e for e in result.errors)

    def test_failed_write_keeps_previous_hash(self, gateway, store):
        run_pass(gateway, store, [make_item(password="p1")])
        good_hash = store.get_record("prod", "db").content_hash
        gateway.fail_on[("prod", "db")] = "update"
        run_pass(gateway, store, [make_item(password="p2")])
        record = store.get_record("prod", "db")
        assert record.status == SyncStatus.FAILED
        assert record.content_hash == good_hash

    def test_snapshot_failure_propagates(self, gateway, store):
        gateway.list_error = GatewayError("cluster unreachable")
        reconciler = Reconciler(gateway, store)
        with pytest.raises(GatewayError):
            reconciler.snapshot(desired_from(make_item()), [])
        assert gateway.writes == []

    def test_store_error_recorded_not_raised(self, gateway, store, monkeypatch):
        def boom(record):
            raise RuntimeError("db down")

        monkeypatch.setattr(store, "upsert_record", boom)
        result = run_pass(gateway, store, [make_item()])
        assert result.created == 1
        assert any("db down" in e for e in result.errors)

    def test_invariant_violation_raises(self, gateway, store):
        desired = desired_from(make_item())
        desired[("prod", "db")].content_hash = "not-a-hash"
        reconciler = Reconciler(gateway, store)
        with pytest.raises(InvariantError):
            reconciler.plan(desired, [], reconciler.snapshot(desired, []))

    def test_misfiled_desired_raises(self, gateway, store):
        desired = desired_from(make_item())
        desired[("staging", "db")] = desired.pop(("prod", "db"))
        with pytest.raises(InvariantError):
            Reconciler(gateway, store).check_invariants(desired)

    def test_create_without_desired_raises(self, gateway, store):
        with pytest.raises(InvariantError, match="no desired secret"):
            Reconciler(gateway, store).apply(Action(Outcome.CREATED, "prod", "db"))
        assert gateway.writes == []

    def test_update_without_live_raises(self, gateway, store):
        desired = desired_from(make_item())[("prod", "db")]
        action = Action(Outcome.UPDATED, "prod", "db", desired=desired)
        with pytest.raises(InvariantError, match="without a live secret"):
            Reconciler(gateway, store).execute([action])
        assert gateway.writes == []


class TestModes:
    def test_dry_run_writes_nothing(self, gateway, store):
        run_pass(gateway, store, [make_item(name="old")])
        calls_before = list(gateway.calls)
        records_before = store.list_records()

        result = run_pass(gateway, store, [make_item(name="new")], dry_run=True)
        assert result.dry_run is True
        assert result.created == 1
        assert result.deleted == 1
        assert gateway.calls == calls_before
        assert store.list_records() == records_before

    def test_cleanup_only_deletes(self, gateway, store):
        run_pass(gateway, store, [make_item(name="old")])
        result = run_pass(gateway, store, [make_item(name="new")], cleanup_only=True)
        assert [t.outcome for t in result.targets] == [Outcome.DELETED]
        assert ("prod", "new") not in gateway.secrets
        assert ("prod", "old") not in gateway.secrets

    def test_namespace_scope(self, gateway, store):
        run_pass(gateway, store, [make_item(name="a", namespaces="staging")])
        result = run_pass(gateway, store, [make_item(name="b")], namespace="prod")
        assert [(t.namespace, t.name) for t in result.targets] == [("prod", "b")]
        assert ("staging", "a") in gateway.secrets

    def test_stable_target_order(self, gateway, store):
        items = [
            make_item(name="zz", namespaces="staging"),
            make_item(name="aa", namespaces="staging,prod"),
            make_item(name="mm"),
        ]
        result = run_pass(gateway, store, items, max_workers=3)
        assert [(t.namespace, t.name) for t in result.targets] == [
            ("prod", "aa"),
            ("prod", "mm"),
            ("staging", "aa"),
            ("staging", "zz"),
        ]

    def test_cancel_stops_new_batches(self, gateway, store):
        items = [make_item(name=f"s{i}") for i in range(4)]
        desired = desired_from(*items)
        reconciler = Reconciler(gateway, store, ReconcileOptions(max_workers=2))
        snapshot = reconciler.snapshot(desired, [])
        cancel = threading.Event()

        original = gateway.create_secret

        def create_then_cancel(secret):
            original(secret)
            cancel.set()

        gateway.create_secret = create_then_cancel
        result = reconciler.reconcile(desired, [], snapshot, cancel=cancel)
        assert result.cancelled is True
        assert result.status == RunStatus.FAILED
        assert len(result.targets) == 2
        assert len(gateway.secrets) == 2
        assert any("Cancelled after 2 of 4" in e for e in result.errors)


class TestEndToEnd:
    def test_create_update_delete_keep(self, gateway, store):
        # first run creates Secret db in prod with key db
        r1 = run_pass(gateway, store, [make_item(name="db", namespaces="prod", password="p1")])
        assert r1.created == 1
        assert gateway.secrets[("prod", "db")].data == {"db": "p1"}
        h1 = gateway.secrets[("prod", "db")].content_hash

        # password change updates the same Secret and bumps the hash
        r2 = run_pass(gateway, store, [make_item(name="db", namespaces="prod", password="p2")])
        assert r2.updated == 1
        assert gateway.secrets[("prod", "db")].data == {"db": "p2"}
        assert gateway.secrets[("prod", "db")].content_hash != h1

        # item deleted, orphan cleanup disabled: kept and reported
        r3 = run_pass(gateway, store, [], delete_orphans=False)
        assert r3.orphans_kept == 1
        assert ("prod", "db") in gateway.secrets

        # orphan cleanup on: deleted
        r4 = run_pass(gateway, store, [])
        assert r4.deleted == 1
        assert ("prod", "db") not in gateway.secrets
        assert r4.namespaces()["prod"].deleted == 1
