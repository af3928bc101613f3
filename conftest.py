"""
Root-level shared test fixtures.

Inherited by vwsync/sync/tests and the repo-root tests/ suite.
"""

from __future__ import annotations

import os

import pytest

from vwsync.config import reset_config
from vwsync.sync import lock

_ENV_PREFIXES = ("VAULTWARDEN__", "KUBERNETES__", "SYNC__", "DATABASE__", "LOGGING__")


@pytest.fixture
def clean_env(monkeypatch):
    """Remove vwsync env vars that leak in from the host environment."""
    for key in list(os.environ):
        if key.startswith(_ENV_PREFIXES) or key in ("BW_CLIENTID", "BW_CLIENTSECRET"):
            monkeypatch.delenv(key, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture(autouse=True)
def _release_sync_guard():
    """A failed test must not leave the in-process sync guard held."""
    lock.clear()
    yield
    lock.clear()
