"""PostgreSQL access for the vwsync state store."""

from vwsync.db.connection import get_connection

__all__ = ["get_connection"]
