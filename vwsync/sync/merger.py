"""
Merger: combines fragments that target the same (namespace, name).

Key collisions resolve last-writer-wins by the source item's position in the
pass order, never by the order the fragments happen to arrive in. The pass
order itself is imposed here (``pass_order``) because the vault listing order
is not guaranteed stable between calls.
"""

from __future__ import annotations

import json
import logging

from vwsync.sync.hashing import combined_hash
from vwsync.sync.models import MANAGED_KEYS_ANNOTATION, DesiredSecret, SecretFragment, VaultItem

logger = logging.getLogger(__name__)


def pass_order(items: list[VaultItem]) -> list[VaultItem]:
    """Stable processing order: oldest revision first, item id as tie-break.

    The most recently edited item therefore wins key collisions.
    """
    return sorted(items, key=lambda i: (i.revision_date, i.id))


def merge(fragments: list[SecretFragment]) -> dict[tuple[str, str], DesiredSecret]:
    """Group fragments into one DesiredSecret per (namespace, secret name)."""
    groups: dict[tuple[str, str], list[SecretFragment]] = {}
    for frag in sorted(fragments, key=lambda f: (f.order, f.item_id)):
        for ns in frag.namespaces:
            groups.setdefault((ns, frag.secret_name), []).append(frag)

    desired: dict[tuple[str, str], DesiredSecret] = {}
    for key in sorted(groups):
        namespace, name = key
        data: dict[str, str] = {}
        labels: dict[str, str] = {}
        annotations: dict[str, str] = {}
        item_ids: list[str] = []
        for frag in groups[key]:
            for k in frag.data:
                if k in data and data[k] != frag.data[k]:
                    logger.debug(
                        "Key %s in %s/%s overridden by item %s", k, namespace, name, frag.item_id
                    )
            data.update(frag.data)
            labels.update(frag.labels)
            annotations.update(frag.annotations)
            if frag.item_id not in item_ids:
                item_ids.append(frag.item_id)

        annotations[MANAGED_KEYS_ANNOTATION] = managed_keys_value(data)
        desired[key] = DesiredSecret(
            namespace=namespace,
            name=name,
            data=data,
            content_hash=combined_hash(f.item_hash for f in groups[key]),
            item_ids=item_ids,
            labels=labels,
            annotations=annotations,
        )
    return desired


def managed_keys_value(data: dict[str, str]) -> str:
    """Annotation value listing the keys this system owns in a Secret."""
    return json.dumps(sorted(data))
