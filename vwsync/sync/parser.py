"""
Field Parser: turns one vault item into a SecretFragment.

Directives come from reserved custom fields (names configurable, matched
case-insensitively) or from tag lines in the item notes:

    #namespaces: prod, staging
    #secret-name: shared-db
    #secret-key-password: db-password
    #secret-key-username: db-user
    #ignore-field: internal, legacy
    #kv:api-host=db.internal
    ```secret:ca.crt
    -----BEGIN CERTIFICATE-----
    ...
    ```

Parsing never raises on malformed input. Problems become warnings and the
item falls back to defaults, or is dropped when no valid target remains.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from vwsync.config import FieldNames
from vwsync.sync.hashing import item_hash
from vwsync.sync.models import ParseResult, SecretFragment, VaultItem

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 253

_KV_PREFIX = "#kv:"
_BLOCK_PREFIX = "```secret:"
_FENCE = "```"

_USERNAME_FIELDS = ("username", "user", "login")
_KEY_MATERIAL_FIELDS = ("ssh_key", "private_key", "ssh_private_key", "key")

_NAMESPACE_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_NAME_INVALID_RE = re.compile(r"[^a-z0-9]+")


# ─── Sanitizers ───────────────────────────────────────────────────────


def sanitize_secret_name(raw: str) -> str | None:
    """Lowercase, collapse non-alphanumeric runs to '-', bound to 253 chars.

    Returns None when nothing valid remains.
    """
    name = _NAME_INVALID_RE.sub("-", raw.lower()).strip("-")
    name = name[:MAX_NAME_LENGTH].rstrip("-")
    return name or None


def sanitize_key(raw: str, replacement: str = "-") -> str | None:
    """Make a Secret data key out of an arbitrary field name.

    Keys may contain ``[-._a-zA-Z0-9]``; anything else becomes the
    replacement character, runs of which are collapsed and trimmed.
    """
    key = re.sub(r"[^-._a-zA-Z0-9]", replacement, raw.strip())
    if replacement:
        key = re.sub(re.escape(replacement) + "{2,}", replacement, key).strip(replacement)
    key = key[:MAX_NAME_LENGTH]
    if not any(c.isalnum() for c in key):
        return None
    return key


def split_list(raw: str) -> list[str]:
    """Comma-separated list, trimmed, lowercased, deduplicated in order."""
    seen: list[str] = []
    for part in raw.split(","):
        value = part.strip().lower()
        if value and value not in seen:
            seen.append(value)
    return seen


# ─── Notes ────────────────────────────────────────────────────────────


@dataclass
class NoteScan:
    """Result of scanning an item's notes for directives."""

    tags: dict[str, str] = field(default_factory=dict)
    entries: dict[str, str] = field(default_factory=dict)
    body: str = ""
    warnings: list[str] = field(default_factory=list)


def scan_notes(notes: str, tag_names: list[str]) -> NoteScan:
    """Extract tag lines, #kv entries and fenced secret blocks.

    Everything that is not a directive is kept, in order, as the body.
    """
    scan = NoteScan()
    if not notes:
        return scan

    text = notes.replace("\r\n", "\n").replace("\r", "\n")
    prefixes = {f"#{name.lower()}:": name.lower() for name in tag_names}
    body: list[str] = []
    block_key: str | None = None
    block: list[str] = []

    for line in text.split("\n"):
        if block_key is not None:
            if line.startswith(_FENCE):
                scan.entries[block_key] = "\n".join(block)
                block_key = None
                block = []
            else:
                block.append(line)
            continue

        if line.lower().startswith(_BLOCK_PREFIX):
            key = line[len(_BLOCK_PREFIX) :].strip()
            if key:
                block_key = key
                continue
            scan.warnings.append("fenced secret block without a key name; kept as text")

        stripped = line.strip()
        lowered = stripped.lower()

        if lowered.startswith(_KV_PREFIX):
            pair = stripped[len(_KV_PREFIX) :]
            key, sep, value = pair.partition("=")
            if sep and key.strip():
                scan.entries[key.strip()] = value
            else:
                scan.warnings.append(f"ignoring malformed #kv line: {stripped!r}")
            continue

        matched = next((p for p in prefixes if lowered.startswith(p)), None)
        if matched is not None:
            # First occurrence wins, matching custom-field precedence.
            scan.tags.setdefault(prefixes[matched], stripped[len(matched) :].strip())
            continue

        body.append(line)

    if block_key is not None:
        scan.entries[block_key] = "\n".join(block)

    scan.body = "\n".join(body).strip()
    return scan


# ─── Parser ───────────────────────────────────────────────────────────


class FieldParser:
    """Stateless item → fragment transformation for one set of field names."""

    def __init__(self, fields: FieldNames | None = None):
        self.fields = fields or FieldNames()
        self._tags = [
            self.fields.namespaces,
            self.fields.secret_name,
            self.fields.secret_key_password,
            self.fields.secret_key_username,
            self.fields.secret_key,
            self.fields.ignore_field,
        ]

    def _directive(self, item: VaultItem, scan: NoteScan, name: str) -> str | None:
        value = item.field_value(name)
        if value and value.strip():
            return value.strip()
        tag = scan.tags.get(name.lower())
        return tag or None

    def parse(self, item: VaultItem, order: int = 0) -> ParseResult:
        """Parse one item. ``order`` is its position in the pass order."""
        result = ParseResult()
        label = f"item {item.name!r} ({item.id})"

        if item.deleted:
            result.skipped = True
            return result

        scan = scan_notes(item.notes, self._tags)
        result.warnings.extend(f"{label}: {w}" for w in scan.warnings)

        # Namespaces
        raw_ns = self._directive(item, scan, self.fields.namespaces)
        namespaces: list[str] = []
        for ns in split_list(raw_ns or ""):
            if len(ns) <= 63 and _NAMESPACE_RE.match(ns):
                namespaces.append(ns)
            else:
                result.warnings.append(f"{label}: invalid namespace {ns!r} ignored")
        if not namespaces:
            logger.debug("Skipping %s: no target namespaces", label)
            result.skipped = True
            return result

        # Secret name
        secret_name = None
        explicit_name = self._directive(item, scan, self.fields.secret_name)
        if explicit_name:
            secret_name = sanitize_secret_name(explicit_name)
            if secret_name is None:
                result.warnings.append(
                    f"{label}: secret name {explicit_name!r} is invalid, using item name"
                )
        default_name = sanitize_secret_name(item.name)
        secret_name = secret_name or default_name
        if secret_name is None:
            result.warnings.append(f"{label}: cannot derive a valid secret name, dropped")
            return result

        # Keys
        repl = self.fields.replacement_char
        password_key = self._resolve_key(
            item,
            scan,
            (self.fields.secret_key_password, self.fields.secret_key),
            default_name or secret_name,
            result,
            label,
        )
        username_key = self._resolve_key(
            item,
            scan,
            (self.fields.secret_key_username,),
            f"{password_key}_username",
            result,
            label,
        )

        data: dict[str, str] = {}

        secret_value = self._credential(item)
        if secret_value:
            data[password_key] = secret_value
        elif scan.body:
            data[password_key] = scan.body
        else:
            # Placeholder so the Secret always carries its primary key.
            data[password_key] = item.name

        username = self._username(item)
        if username:
            data.setdefault(username_key, username)

        if item.ssh_key:
            if item.ssh_key.public_key:
                data.setdefault(f"{password_key}-public-key", item.ssh_key.public_key)
            if item.ssh_key.fingerprint:
                data.setdefault(f"{password_key}-fingerprint", item.ssh_key.fingerprint)

        for raw_key, value in scan.entries.items():
            key = sanitize_key(raw_key, repl)
            if key is None:
                result.warnings.append(f"{label}: note key {raw_key!r} is invalid, dropped")
                continue
            data[key] = value

        for raw_key, value in item.details:
            key = sanitize_key(raw_key, repl)
            if key and value:
                data.setdefault(key, value)

        ignored = set(split_list(self._directive(item, scan, self.fields.ignore_field) or ""))
        reserved = self.fields.reserved
        for f in item.fields:
            lowered = f.name.strip().lower()
            if not lowered or not f.value or lowered in reserved or lowered in ignored:
                continue
            key = sanitize_key(f.name, repl)
            if key is None:
                result.warnings.append(f"{label}: field {f.name!r} has no valid key, dropped")
                continue
            data.setdefault(key, f.value)

        if ignored:
            data = {k: v for k, v in data.items() if k.lower() not in ignored}

        if not data:
            result.warnings.append(f"{label}: no secret data, dropped")
            return result

        result.fragments.append(
            SecretFragment(
                item_id=item.id,
                item_name=item.name,
                order=order,
                namespaces=tuple(namespaces),
                secret_name=secret_name,
                data=data,
                item_hash=item_hash(item),
            )
        )
        return result

    def _resolve_key(
        self,
        item: VaultItem,
        scan: NoteScan,
        names: tuple[str, ...],
        default: str,
        result: ParseResult,
        label: str,
    ) -> str:
        for name in names:
            raw = self._directive(item, scan, name)
            if not raw:
                continue
            key = sanitize_key(raw, self.fields.replacement_char)
            if key:
                return key
            result.warnings.append(f"{label}: key override {raw!r} is invalid, using default")
            break
        return default

    @staticmethod
    def _credential(item: VaultItem) -> str:
        if item.login and item.login.password:
            return item.login.password
        if item.ssh_key and item.ssh_key.private_key:
            return item.ssh_key.private_key
        return item.field_value(*_KEY_MATERIAL_FIELDS) or ""

    @staticmethod
    def _username(item: VaultItem) -> str:
        if item.login and item.login.username:
            return item.login.username
        return item.field_value(*_USERNAME_FIELDS) or ""


def parse_items(items: list[VaultItem], parser: FieldParser) -> tuple[list[SecretFragment], list[str], int]:
    """Parse items in pass order. Returns (fragments, warnings, skipped count).

    Runs sequentially on the calling thread. Parsing is pure CPU work (regex
    and string handling), so under the GIL a thread pool would add overhead
    without speedup; only the I/O-bound cluster writes are parallel. The
    sequential loop also keeps fragments and warnings in pass order.
    """
    fragments: list[SecretFragment] = []
    warnings: list[str] = []
    skipped = 0
    for order, item in enumerate(items):
        res = parser.parse(item, order)
        fragments.extend(res.fragments)
        warnings.extend(res.warnings)
        if res.skipped:
            skipped += 1
    for w in warnings:
        logger.warning("Parse: %s", w)
    return fragments, warnings, skipped
