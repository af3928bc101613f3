"""
Test fixtures for the reconciliation pipeline.

- In-memory cluster and state store (no Kubernetes, no PostgreSQL)
- Lock directory under tmp_path
- Mocked get_connection for the PostgreSQL store
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from vwsync.config import Config, SyncConfig
from vwsync.sync.tests.fakes import InMemoryGateway, InMemoryStore


@pytest.fixture
def gateway():
    return InMemoryGateway(namespaces=("prod", "staging", "default"))


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def sync_config(tmp_path: Path) -> Config:
    """Config with the lock file in a temp dir and two workers."""
    return Config(sync=SyncConfig(lock_dir=tmp_path, max_workers=2, interval_seconds=1))


@pytest.fixture
def mock_db():
    """Mock the database connection for PostgresStateStore tests."""
    with patch("vwsync.sync.store.get_connection") as mock_conn:
        conn = MagicMock()
        cur = MagicMock()
        conn.__enter__ = MagicMock(return_value=conn)
        conn.__exit__ = MagicMock(return_value=False)
        conn.cursor.return_value = cur
        cur.rowcount = 1
        cur.fetchone.return_value = None
        cur.fetchall.return_value = []
        mock_conn.return_value = conn
        yield {"connection": mock_conn, "conn": conn, "cursor": cur}
