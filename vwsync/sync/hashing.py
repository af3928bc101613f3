"""
Content hashing for vault items and merged Secrets.

An item hash covers every field that can influence the output (name, notes,
credentials, SSH key, URIs, card/identity details, custom fields), not just
the emitted keys, so metadata-only edits still trigger an update. Custom
fields are sorted before hashing, making the result independent of field
order in the vault.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable

from vwsync.sync.models import VaultItem


def _canonical(item: VaultItem) -> str:
    login = item.login
    ssh = item.ssh_key
    doc = {
        "id": item.id,
        "name": item.name,
        "type": str(item.type),
        "notes": item.notes,
        "login": {
            "username": login.username,
            "password": login.password,
            "uris": sorted(login.uris),
        }
        if login
        else None,
        "ssh": {
            "private_key": ssh.private_key,
            "public_key": ssh.public_key,
            "fingerprint": ssh.fingerprint,
        }
        if ssh
        else None,
        "details": sorted([k, v] for k, v in item.details),
        "fields": sorted([f.name, f.value, f.hidden] for f in item.fields),
    }
    return json.dumps(doc, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def item_hash(item: VaultItem) -> str:
    """SHA-256 hex digest of an item's canonical form."""
    return hashlib.sha256(_canonical(item).encode("utf-8")).hexdigest()


def combined_hash(item_hashes: Iterable[str]) -> str:
    """Hash for a Secret fed by several items; stable under input reordering."""
    joined = "|".join(sorted(item_hashes))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()
