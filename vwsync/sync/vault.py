"""
Vault boundary: lists decrypted items through the Bitwarden ``bw`` CLI.

Subprocess lifecycle (server config, API-key login, unlock, session token)
stays inside this module; callers only see ``list_items() -> list[VaultItem]``.
"""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from vwsync.config import VaultConfig
from vwsync.sync.models import CustomField, ItemType, LoginInfo, SshKeyInfo, VaultItem
from vwsync.sync.resilience import CircuitBreaker, CircuitOpenError, call_with_resilience

logger = logging.getLogger(__name__)

_ITEM_TYPES = {
    1: ItemType.LOGIN,
    2: ItemType.SECURE_NOTE,
    3: ItemType.CARD,
    4: ItemType.IDENTITY,
    5: ItemType.SSH_KEY,
}

_HIDDEN_FIELD = 1

# bw refuses `config server` and `login` while a previous session exists
_STALE_SESSION_RE = re.compile(r"already logged in|logout required", re.IGNORECASE)

_CARD_KEYS = ("cardholderName", "brand", "number", "expMonth", "expYear", "code")
_IDENTITY_KEYS = (
    "title",
    "firstName",
    "middleName",
    "lastName",
    "address1",
    "address2",
    "address3",
    "city",
    "state",
    "postalCode",
    "country",
    "company",
    "email",
    "phone",
    "ssn",
    "username",
    "passportNumber",
    "licenseNumber",
)


class VaultError(Exception):
    """The vault could not be read."""


class VaultSource(ABC):
    @abstractmethod
    def list_items(self) -> list[VaultItem]:
        """Return every decrypted item visible to the configured account."""


def _kebab(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "-", name).lower()


def _str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def item_from_json(raw: dict[str, Any]) -> VaultItem:
    """Convert one ``bw list items`` record into a VaultItem."""
    item_type = _ITEM_TYPES.get(raw.get("type") or 1, ItemType.LOGIN)

    login = None
    if raw.get("login"):
        lg = raw["login"]
        login = LoginInfo(
            username=_str(lg.get("username")),
            password=_str(lg.get("password")),
            uris=tuple(_str(u.get("uri")) for u in lg.get("uris") or [] if u.get("uri")),
        )

    ssh = None
    if raw.get("sshKey"):
        sk = raw["sshKey"]
        ssh = SshKeyInfo(
            private_key=_str(sk.get("privateKey")),
            public_key=_str(sk.get("publicKey")),
            fingerprint=_str(sk.get("keyFingerprint")),
        )

    details: list[tuple[str, str]] = []
    for section, keys in (("card", _CARD_KEYS), ("identity", _IDENTITY_KEYS)):
        block = raw.get(section) or {}
        for key in keys:
            value = _str(block.get(key))
            if value:
                details.append((f"{section}-{_kebab(key)}", value))

    fields = tuple(
        CustomField(
            name=_str(f.get("name")),
            value=_str(f.get("value")),
            hidden=f.get("type") == _HIDDEN_FIELD,
        )
        for f in raw.get("fields") or []
    )

    return VaultItem(
        id=_str(raw.get("id")),
        name=_str(raw.get("name")),
        type=item_type,
        notes=_str(raw.get("notes")),
        login=login,
        ssh_key=ssh,
        details=tuple(details),
        fields=fields,
        revision_date=_str(raw.get("revisionDate")),
        deleted=bool(raw.get("deletedDate")),
    )


class BitwardenCli(VaultSource):
    """Drive the ``bw`` CLI with API-key login and a master-password unlock."""

    def __init__(
        self,
        cfg: VaultConfig,
        timeout: float = 30.0,
        breaker: CircuitBreaker | None = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        retry_wait_max: float = 8.0,
    ):
        self.cfg = cfg
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker("vault")
        self._runner = runner
        self._session: str | None = None
        self.retry_wait_max = retry_wait_max

    def _run(self, *args: str, extra_env: dict[str, str] | None = None, timeout: float | None = None) -> str:
        env = os.environ.copy()
        if self._session:
            env["BW_SESSION"] = self._session
        if extra_env:
            env.update(extra_env)
        cmd = [self.cfg.bw_path, *args]
        try:
            proc = self._runner(
                cmd,
                capture_output=True,
                text=True,
                env=env,
                timeout=timeout or self.timeout,
                check=False,
            )
        except FileNotFoundError as e:
            raise VaultError(f"bw CLI not found at {self.cfg.bw_path!r}") from e
        if proc.returncode != 0:
            raise VaultError(f"bw {args[0]} failed ({proc.returncode}): {proc.stderr.strip()}")
        return proc.stdout

    def status(self) -> str:
        """``unauthenticated``, ``locked`` or ``unlocked``."""
        out = self._run("status", "--raw")
        try:
            return json.loads(out).get("status", "unauthenticated")
        except (json.JSONDecodeError, AttributeError) as e:
            raise VaultError(f"unparsable bw status output: {e}") from e

    def login(self) -> None:
        """Authenticate (if needed) and unlock, keeping the session token.

        A session left behind by another process blocks both ``config server``
        and ``login``; that session is logged out once and the step retried.
        """
        state = self.status()
        if state == "unauthenticated":
            if self.cfg.server_url:
                self._run_clearing_session("config", "server", self.cfg.server_url)
            self._run_clearing_session(
                "login",
                "--apikey",
                "--raw",
                extra_env={
                    "BW_CLIENTID": self.cfg.client_id,
                    "BW_CLIENTSECRET": self.cfg.client_secret,
                },
                timeout=max(self.timeout, 60.0),
            )
            logger.info("Logged in to %s", self.cfg.server_url or "vault")
        token = self._run(
            "unlock",
            "--passwordenv",
            "BW_PASSWORD",
            "--raw",
            extra_env={"BW_PASSWORD": self.cfg.master_password},
            timeout=max(self.timeout, 60.0),
        ).strip()
        if not token:
            raise VaultError("bw unlock returned an empty session token")
        self._session = token
        logger.debug("Vault unlocked")

    def logout(self) -> None:
        try:
            self._run("logout")
        except VaultError as e:
            logger.debug("bw logout: %s", e)
        self._session = None

    def _run_clearing_session(self, *args: str, **kwargs: Any) -> str:
        try:
            return self._run(*args, **kwargs)
        except VaultError as e:
            if not _STALE_SESSION_RE.search(str(e)):
                raise
            logger.info("bw %s blocked by an existing session, logging out", args[0])
            self.logout()
            return self._run(*args, **kwargs)

    def _list(self) -> list[VaultItem]:
        if self._session is None:
            self.login()
        try:
            self._run("sync", timeout=max(self.timeout, 120.0))
        except VaultError:
            # Stale session; log in again on the next attempt
            self._session = None
            raise
        args = ["list", "items", "--raw"]
        if self.cfg.organization_id:
            args += ["--organizationid", self.cfg.organization_id]
        if self.cfg.folder_id:
            args += ["--folderid", self.cfg.folder_id]
        if self.cfg.collection_id:
            args += ["--collectionid", self.cfg.collection_id]
        out = self._run(*args)
        try:
            raw = json.loads(out)
        except json.JSONDecodeError as e:
            raise VaultError(f"unparsable bw list output: {e}") from e
        if not isinstance(raw, list):
            raise VaultError("bw list items did not return a list")
        items = [item_from_json(r) for r in raw if isinstance(r, dict)]
        logger.info("Fetched %d items from vault", len(items))
        return items

    def list_items(self) -> list[VaultItem]:
        try:
            return call_with_resilience(
                self._list,
                breaker=self.breaker,
                is_transient=lambda e: isinstance(e, subprocess.TimeoutExpired),
                is_failure=lambda e: isinstance(e, (VaultError, subprocess.TimeoutExpired)),
                wait_min=min(1.0, self.retry_wait_max),
                wait_max=self.retry_wait_max,
            )
        except CircuitOpenError as e:
            raise VaultError(str(e)) from e
        except subprocess.TimeoutExpired as e:
            raise VaultError(f"bw timed out after {e.timeout}s") from e
