"""SQLite connection pool shared by the ingestion path and batch workers."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator, List

logger = logging.getLogger(__name__)


class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool.

    Connections are created lazily up to ``max_connections`` and may be handed
    to any thread, so they are opened with ``check_same_thread=False``. A
    caller that finds the pool exhausted blocks until a connection returns.
    """

    def __init__(self, database: str, max_connections: int = 5, timeout: float = 30.0):
        self.database = database
        self.max_connections = max_connections
        self.timeout = timeout
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0
        self._all: List[sqlite3.Connection] = []

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute(f"PRAGMA busy_timeout = {int(self.timeout * 1000)}")
        return conn

    def _acquire(self) -> sqlite3.Connection:
        try:
            return self._pool.get(block=False)
        except Empty:
            pass
        with self._lock:
            if self._created_connections < self.max_connections:
                connection = self._create_connection()
                self._created_connections += 1
                self._all.append(connection)
                logger.debug("Created new connection (total: %d)", self._created_connections)
                return connection
        return self._pool.get(block=True)

    def _release(self, connection: sqlite3.Connection) -> None:
        try:
            connection.rollback()
            self._pool.put(connection)
        except sqlite3.Error as exc:
            logger.error("Error returning connection to pool: %s", exc)
            with self._lock:
                self._created_connections -= 1
                if connection in self._all:
                    self._all.remove(connection)
            try:
                connection.close()
            except sqlite3.Error:
                logger.debug("Closing a broken connection failed", exc_info=True)

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Borrow a connection; uncommitted work is rolled back on return."""
        connection = self._acquire()
        try:
            yield connection
        finally:
            self._release(connection)

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Borrow a connection inside ``BEGIN IMMEDIATE`` and commit on success."""
        with self.get_connection() as connection:
            connection.execute("BEGIN IMMEDIATE")
            try:
                yield connection
            except BaseException:
                connection.rollback()
                raise
            connection.commit()

    def close_all(self) -> None:
        with self._lock:
            connections, self._all = self._all, []
            self._created_connections = 0
        while True:
            try:
                self._pool.get(block=False)
            except Empty:
                break
        for connection in connections:
            try:
                connection.close()
            except sqlite3.Error:
                logger.debug("Closing pooled connection failed", exc_info=True)
