"""Tests for the fragment merger: grouping, collisions, determinism."""

from __future__ import annotations

import json

from vwsync.sync.hashing import combined_hash
from vwsync.sync.merger import managed_keys_value, merge, pass_order
from vwsync.sync.models import MANAGED_KEYS_ANNOTATION, SecretFragment
from vwsync.sync.parser import FieldParser, parse_items
from vwsync.sync.tests.fakes import make_item


def _frag(item_id, order, data, namespaces=("prod",), name="shared", item_hash=None):
    return SecretFragment(
        item_id=item_id,
        item_name=item_id,
        order=order,
        namespaces=tuple(namespaces),
        secret_name=name,
        data=dict(data),
        item_hash=item_hash or (item_id[0] * 64),
    )


class TestPassOrder:
    def test_sorted_by_revision_then_id(self):
        items = [
            make_item(name="c", revision_date="2026-03-01"),
            make_item(name="b", revision_date="2026-01-01", item_id="id-2"),
            make_item(name="a", revision_date="2026-01-01", item_id="id-1"),
        ]
        assert [i.name for i in pass_order(items)] == ["a", "b", "c"]


class TestMerge:
    def test_single_fragment(self):
        desired = merge([_frag("a", 0, {"k": "v"})])
        d = desired[("prod", "shared")]
        assert d.data == {"k": "v"}
        assert d.item_ids == ["a"]
        assert d.content_hash == combined_hash(["a" * 64])

    def test_fans_out_to_namespaces(self):
        desired = merge([_frag("a", 0, {"k": "v"}, namespaces=("prod", "staging"))])
        assert sorted(desired) == [("prod", "shared"), ("staging", "shared")]

    def test_keys_combined(self):
        desired = merge([_frag("a", 0, {"x": "1"}), _frag("b", 1, {"y": "2"})])
        assert desired[("prod", "shared")].data == {"x": "1", "y": "2"}

    def test_later_item_wins_regardless_of_fragment_order(self):
        early = _frag("a", 0, {"k": "early"})
        late = _frag("b", 1, {"k": "late"})
        assert merge([early, late])[("prod", "shared")].data["k"] == "late"
        assert merge([late, early])[("prod", "shared")].data["k"] == "late"

    def test_hash_stable_under_reordering(self):
        a = _frag("a", 0, {"x": "1"})
        b = _frag("b", 1, {"y": "2"})
        assert merge([a, b])[("prod", "shared")].content_hash == merge([b, a])[("prod", "shared")].content_hash

    def test_managed_keys_annotation(self):
        d = merge([_frag("a", 0, {"b": "1", "a": "2"})])[("prod", "shared")]
        assert json.loads(d.annotations[MANAGED_KEYS_ANNOTATION]) == ["a", "b"]
        assert d.annotations[MANAGED_KEYS_ANNOTATION] == managed_keys_value(d.data)

    def test_output_sorted(self):
        desired = merge(
            [
                _frag("a", 0, {"k": "v"}, namespaces=("zeta",), name="z"),
                _frag("b", 1, {"k": "v"}, namespaces=("alpha",), name="y"),
            ]
        )
        assert list(desired) == [("alpha", "y"), ("zeta", "z")]

    def test_empty(self):
        assert merge([]) == {}


class TestParseAndMerge:
    def test_two_items_same_secret(self):
        newer = make_item(
            name="db-admin",
            password="admin-pw",
            fields=[("secret-name", "db"), ("host", "new-host")],
            revision_date="2026-02-01",
        )
        older = make_item(
            name="db-app",
            password="app-pw",
            fields=[("secret-name", "db"), ("host", "old-host")],
            revision_date="2026-01-01",
        )
        fragments, _, _ = parse_items(pass_order([newer, older]), FieldParser())
        d = merge(fragments)[("prod", "db")]
        assert d.data == {"db-app": "app-pw", "db-admin": "admin-pw", "host": "new-host"}
        assert d.item_ids == ["id-db-app", "id-db-admin"]
