"""Postgres connection handling for catalog introspection."""

import logging
import os
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

import psycopg2
from dotenv import load_dotenv
from psycopg2 import pool
from psycopg2.extras import RealDictCursor

from .errors import CatalogError

logger = logging.getLogger(__name__)


def expand_connection_string(conn_str: str) -> str:
    """Resolve a connection string, reading '$VAR' strings from the environment."""
    if conn_str.startswith("$"):
        load_dotenv()
        return os.getenv(conn_str[1:], "")
    return conn_str


class Session:
    """One database connection shared by every catalog call of a run.

    The connection runs in autocommit mode so no transaction is held open
    between introspection queries. Calls are serialized because psycopg2
    connections only run one statement at a time.
    """

    def __init__(self, conn):
        self.conn = conn
        self._lock = threading.RLock()

    @contextmanager
    def exclusive(self) -> Iterator["Session"]:
        """Hold the session for a sequence of statements that must not interleave."""
        with self._lock:
            yield self

    def fetch_one(self, query: str, params: Optional[tuple] = None) -> Optional[Dict[str, Any]]:
        """Execute query and return one row as dict."""
        with self._lock:
            with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                result = cur.fetchone()
                return dict(result) if result else None

    def fetch_all(self, query: str, params: Optional[tuple] = None) -> List[Dict[str, Any]]:
        """Execute query and return all rows as list of dicts."""
        with self._lock:
            with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                return [dict(row) for row in cur.fetchall()]

    def execute(self, query: str, params: Optional[tuple] = None) -> int:
        """Execute query and return rowcount."""
        with self._lock:
            with self.conn.cursor() as cur:
                cur.execute(query, params)
                return cur.rowcount

    def result_columns(self, query: str, params: Optional[tuple] = None) -> List[Tuple[str, int]]:
        """Execute query and return (name, type oid) for each result column."""
        with self._lock:
            with self.conn.cursor() as cur:
                cur.execute(query, params)
                if cur.description is None:
                    return []
                return [(col.name, col.type_code) for col in cur.description]


class PgPool:
    """Postgres connection pool and session helpers."""

    _pool: Optional[pool.ThreadedConnectionPool] = None

    @classmethod
    def initialize(cls, connection_strings: List[str], min_conn: int = 1, max_conn: int = 4):
        """Initialize the pool with the first connection string that answers a ping.

        Raises:
            CatalogError: If none of the connection strings work
        """
        if cls._pool is not None:
            return

        for conn_str in connection_strings:
            dsn = expand_connection_string(conn_str)
            if not dsn:
                continue
            try:
                candidate = pool.ThreadedConnectionPool(min_conn, max_conn, dsn)
            except psycopg2.Error as e:
                logger.debug("connection string %s rejected: %s", conn_str, e)
                continue

            if cls._ping(candidate):
                cls._pool = candidate
                return
            candidate.closeall()

        raise CatalogError("unable to connect with any of the provided connection strings")

    @staticmethod
    def _ping(candidate: pool.ThreadedConnectionPool) -> bool:
        conn = candidate.getconn()
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
            return True
        except psycopg2.Error as e:
            logger.debug("ping failed: %s", e)
            return False
        finally:
            candidate.putconn(conn)

    @classmethod
    @contextmanager
    def session(cls) -> Iterator[Session]:
        """Check out one connection for the duration of a resolution run."""
        if cls._pool is None:
            raise RuntimeError("Database pool not initialized. Call PgPool.initialize() first.")

        conn = cls._pool.getconn()
        autocommit = conn.autocommit
        try:
            conn.autocommit = True
            yield Session(conn)
        finally:
            conn.autocommit = autocommit
            cls._pool.putconn(conn)

    @classmethod
    def close_pool(cls):
        """Close all connections in the pool."""
        if cls._pool:
            cls._pool.closeall()
            cls._pool = None
