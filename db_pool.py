"""SQLite connection pool for better resource management."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator

logger = logging.getLogger(__name__)

class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool."""

    def __init__(self, database: str, max_connections: int = 5):
        self.database = database
        self.max_connections = max_connections
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0

    def _create_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with proper settings."""
        # FastAPI runs sync handlers in a threadpool, so a pooled connection
        # may be used by a different thread than the one that opened it.
        conn = sqlite3.connect(self.database, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a connection from the pool or create a new one if needed."""
        connection = None
        try:
            connection = self._pool.get(block=False)
        except Empty:
            with self._lock:
                if self._created_connections < self.max_connections:
                    connection = self._create_connection()
                    self._created_connections += 1
                    logger.debug("Created new connection (total: %s)", self._created_connections)
            if connection is None:
                # Pool exhausted; wait for a connection to come back.
                connection = self._pool.get(block=True)

        try:
            yield connection
        finally:
            try:
                connection.rollback()
                self._pool.put(connection)
            except sqlite3.Error as e:
                logger.error("Error returning connection to pool: %s", e)
                try:
                    connection.close()
                finally:
                    with self._lock:
                        self._created_connections -= 1

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Yield a connection whose writes commit together or not at all."""
        with self.get_connection() as connection:
            try:
                yield connection
                connection.commit()
            except Exception:
                connection.rollback()
                raise

    def ping(self) -> bool:
        try:
            with self.get_connection() as connection:
                connection.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error as e:
            logger.warning("Database ping failed: %s", e)
            return False

    def close_all(self) -> None:
        while True:
            try:
                connection = self._pool.get(block=False)
            except Empty:
                break
            connection.close()
            with self._lock:
                self._created_connections -= 1
