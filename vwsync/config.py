"""
Centralized configuration for vwsync.

All configuration is loaded from environment variables with sensible defaults.
Variable names use the double-underscore sections the operator docs describe
(``VAULTWARDEN__SERVERURL``, ``SYNC__DRYRUN``, ...).

Usage:
    from vwsync.config import get_config
    cfg = get_config()
    print(cfg.sync.interval_seconds)   # 3600
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}

# .NET-style level names accepted alongside Python's
_LEVEL_ALIASES = {
    "trace": "DEBUG",
    "debug": "DEBUG",
    "information": "INFO",
    "info": "INFO",
    "warning": "WARNING",
    "warn": "WARNING",
    "error": "ERROR",
    "critical": "CRITICAL",
    "none": "CRITICAL",
}


@dataclass(frozen=True)
class VaultConfig:
    """Vaultwarden server and ``bw`` CLI parameters."""

    server_url: str = ""
    master_password: str = ""
    client_id: str = ""
    client_secret: str = ""
    organization_id: str = ""
    folder_id: str = ""
    collection_id: str = ""
    bw_path: str = "bw"


@dataclass(frozen=True)
class KubernetesConfig:
    """How to reach the cluster."""

    kubeconfig_path: str = ""
    context: str = ""
    default_namespace: str = "default"
    in_cluster: bool = False


@dataclass(frozen=True)
class FieldNames:
    """Reserved custom-field names recognised by the parser."""

    namespaces: str = "namespaces"
    secret_name: str = "secret-name"
    secret_key_password: str = "secret-key-password"
    secret_key_username: str = "secret-key-username"
    secret_key: str = "secret-key"
    ignore_field: str = "ignore-field"
    replacement_char: str = "-"

    @property
    def reserved(self) -> frozenset[str]:
        """Lowercased reserved names, never emitted as data."""
        return frozenset(
            n.lower()
            for n in (
                self.namespaces,
                self.secret_name,
                self.secret_key_password,
                self.secret_key_username,
                self.secret_key,
                self.ignore_field,
            )
        )


@dataclass(frozen=True)
class SyncConfig:
    """Reconciliation behaviour."""

    dry_run: bool = False
    delete_orphans: bool = True
    interval_seconds: int = 3600
    continuous: bool = False
    max_workers: int = 4
    timeout_seconds: float = 30.0
    lock_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))
    fields: FieldNames = field(default_factory=FieldNames)


@dataclass(frozen=True)
class DatabaseConfig:
    """PostgreSQL connection parameters for the state store."""

    host: str = ""  # empty = Unix socket (peer auth)
    port: int = 5432
    name: str = "vwsync"
    user: str = "vwsync"
    password: str = ""

    @property
    def dict(self) -> dict[str, str | int]:
        """Return a psycopg2.connect() kwargs dict."""
        d: dict[str, str | int] = {
            "dbname": self.name,
            "port": self.port,
        }
        if self.host:
            d["host"] = self.host
        if self.user:
            d["user"] = self.user
        if self.password:
            d["password"] = self.password
        return d


@dataclass(frozen=True)
class Config:
    """Top-level vwsync configuration."""

    vault: VaultConfig = field(default_factory=VaultConfig)
    kubernetes: KubernetesConfig = field(default_factory=KubernetesConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    log_level: str = "INFO"

    @property
    def log_level_value(self) -> int:
        return logging.getLevelName(self.log_level)

    def validate(self) -> list[str]:
        """Return a list of configuration problems (empty when usable)."""
        problems: list[str] = []
        if not self.vault.server_url:
            problems.append("VAULTWARDEN__SERVERURL is required")
        if not (self.vault.client_id and self.vault.client_secret):
            problems.append("BW_CLIENTID and BW_CLIENTSECRET are required")
        if not self.vault.master_password:
            problems.append("VAULTWARDEN__MASTERPASSWORD is required to unlock the vault")
        if self.sync.interval_seconds <= 0:
            problems.append("SYNC__SYNCINTERVALSECONDS must be positive")
        if self.sync.max_workers <= 0:
            problems.append("SYNC__MAXWORKERS must be positive")
        if len(self.sync.fields.replacement_char) != 1:
            problems.append("SYNC__FIELD__REPLACEMENT_CHAR must be a single character")
        return problems

    def redacted(self) -> dict[str, Any]:
        """Configuration as a dict with secrets masked, for display."""

        def _mask(value: str) -> str:
            return "***" if value else ""

        return {
            "vault": {
                "server_url": self.vault.server_url,
                "master_password": _mask(self.vault.master_password),
                "client_id": self.vault.client_id,
                "client_secret": _mask(self.vault.client_secret),
                "organization_id": self.vault.organization_id,
                "folder_id": self.vault.folder_id,
                "collection_id": self.vault.collection_id,
            },
            "kubernetes": {
                "kubeconfig_path": self.kubernetes.kubeconfig_path,
                "context": self.kubernetes.context,
                "default_namespace": self.kubernetes.default_namespace,
                "in_cluster": self.kubernetes.in_cluster,
            },
            "sync": {
                "dry_run": self.sync.dry_run,
                "delete_orphans": self.sync.delete_orphans,
                "interval_seconds": self.sync.interval_seconds,
                "continuous": self.sync.continuous,
                "max_workers": self.sync.max_workers,
                "timeout_seconds": self.sync.timeout_seconds,
                "lock_dir": str(self.sync.lock_dir),
            },
            "database": {
                "host": self.db.host,
                "port": self.db.port,
                "name": self.db.name,
                "user": self.db.user,
                "password": _mask(self.db.password),
            },
            "log_level": self.log_level,
        }


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, "").strip())
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, "").strip())
    except ValueError:
        return default


def _env_str(name: str, default: str = "") -> str:
    value = os.environ.get(name, "").strip()
    return value or default


def normalize_level(raw: str) -> str:
    """Map a .NET or Python level name to a Python logging level name."""
    return _LEVEL_ALIASES.get(raw.strip().lower(), "INFO")


# Singleton
_config: Config | None = None


def get_config() -> Config:
    """Get or create the singleton config from environment variables."""
    global _config
    if _config is not None:
        return _config
    _config = _load_from_env()
    return _config


def _load_from_env() -> Config:
    """Load configuration from environment variables."""
    vault = VaultConfig(
        server_url=_env_str("VAULTWARDEN__SERVERURL"),
        master_password=os.environ.get("VAULTWARDEN__MASTERPASSWORD", ""),
        client_id=_env_str("BW_CLIENTID"),
        client_secret=_env_str("BW_CLIENTSECRET"),
        organization_id=_env_str("VAULTWARDEN__ORGANIZATIONID"),
        folder_id=_env_str("VAULTWARDEN__FOLDERID"),
        collection_id=_env_str("VAULTWARDEN__COLLECTIONID"),
        bw_path=_env_str("VAULTWARDEN__BWPATH", "bw"),
    )

    kubernetes = KubernetesConfig(
        kubeconfig_path=_env_str("KUBERNETES__KUBECONFIGPATH"),
        context=_env_str("KUBERNETES__CONTEXT"),
        default_namespace=_env_str("KUBERNETES__DEFAULTNAMESPACE", "default"),
        in_cluster=_env_bool("KUBERNETES__INCLUSTER", False),
    )

    fields = FieldNames(
        namespaces=_env_str("SYNC__FIELD__NAMESPACES", "namespaces"),
        secret_name=_env_str("SYNC__FIELD__SECRETNAME", "secret-name"),
        secret_key_password=_env_str("SYNC__FIELD__SECRETKEYPASSWORD", "secret-key-password"),
        secret_key_username=_env_str("SYNC__FIELD__SECRETKEYUSERNAME", "secret-key-username"),
        secret_key=_env_str("SYNC__FIELD__SECRETKEY", "secret-key"),
        ignore_field=_env_str("SYNC__FIELD__IGNOREFIELD", "ignore-field"),
        replacement_char=_env_str("SYNC__FIELD__REPLACEMENT_CHAR", "-"),
    )

    sync = SyncConfig(
        dry_run=_env_bool("SYNC__DRYRUN", False),
        delete_orphans=_env_bool("SYNC__DELETEORPHANS", True),
        interval_seconds=_env_int("SYNC__SYNCINTERVALSECONDS", 3600),
        continuous=_env_bool("SYNC__CONTINUOUSSYNC", False),
        max_workers=_env_int("SYNC__MAXWORKERS", 4),
        timeout_seconds=_env_float("SYNC__TIMEOUTSECONDS", 30.0),
        lock_dir=Path(_env_str("SYNC__LOCKDIR", tempfile.gettempdir())),
        fields=fields,
    )

    db = DatabaseConfig(
        host=_env_str("DATABASE__HOST"),
        port=_env_int("DATABASE__PORT", 5432),
        name=_env_str("DATABASE__NAME", "vwsync"),
        user=_env_str("DATABASE__USER", os.environ.get("USER", "vwsync")),
        password=os.environ.get("DATABASE__PASSWORD", ""),
    )

    return Config(
        vault=vault,
        kubernetes=kubernetes,
        sync=sync,
        db=db,
        log_level=normalize_level(_env_str("LOGGING__LOGLEVEL__DEFAULT", "INFO")),
    )


def reset_config() -> None:
    """Reset the singleton config (for testing)."""
    global _config
    _config = None
