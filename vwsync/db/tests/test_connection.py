"""Tests for the pooled connection factory (psycopg2 mocked)."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import psycopg2
import pytest

from vwsync.config import Config, DatabaseConfig
from vwsync.db import connection


@pytest.fixture(autouse=True)
def fresh_pool():
    connection.close_pool()
    cfg = Config(db=DatabaseConfig(host="pg", port=5432, name="vwsync", user="sync"))
    with (
        patch("vwsync.db.connection.get_config", return_value=cfg),
        patch("psycopg2.pool.ThreadedConnectionPool") as pool_cls,
    ):
        pool = MagicMock()
        pool.closed = False
        pool_cls.return_value = pool
        yield {"cls": pool_cls, "pool": pool}
    connection._pool = None


class TestGetPool:
    def test_created_once(self, fresh_pool):
        first = connection.get_pool()
        second = connection.get_pool()
        assert first is second
        assert fresh_pool["cls"].call_count == 1
        kwargs = fresh_pool["cls"].call_args.kwargs
        assert kwargs["host"] == "pg"
        assert kwargs["dbname"] == "vwsync"
        assert kwargs["connect_timeout"] == 30

    def test_sized_for_workers(self, fresh_pool):
        connection.get_pool()
        assert fresh_pool["cls"].call_args.args == (1, 6)

    def test_recreated_after_close(self, fresh_pool):
        connection.get_pool()
        fresh_pool["pool"].closed = True
        connection.get_pool()
        assert fresh_pool["cls"].call_count == 2

    def test_unreachable_server(self, fresh_pool):
        fresh_pool["cls"].side_effect = psycopg2.OperationalError("refused")
        with pytest.raises(ConnectionError, match="DATABASE__"):
            connection.get_pool()


class TestGetConnection:
    def test_commits_on_success(self, fresh_pool):
        conn = fresh_pool["pool"].getconn.return_value
        with connection.get_connection() as c:
            assert c is conn
        conn.commit.assert_called_once()
        conn.rollback.assert_not_called()
        fresh_pool["pool"].putconn.assert_called_once_with(conn)

    def test_rolls_back_and_reraises(self, fresh_pool):
        conn = fresh_pool["pool"].getconn.return_value
        with pytest.raises(RuntimeError):
            with connection.get_connection():
                raise RuntimeError("boom")
        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()
        fresh_pool["pool"].putconn.assert_called_once_with(conn)


def test_close_pool(fresh_pool):
    connection.get_pool()
    connection.close_pool()
    fresh_pool["pool"].closeall.assert_called_once()
    assert connection._pool is None

    connection.get_pool()
    assert fresh_pool["cls"].call_count == 2
