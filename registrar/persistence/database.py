"""
Database management and connection handling.
"""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterator, List

from ..core.exceptions import PersistenceError, ConcurrencyConflictError

logger = logging.getLogger(__name__)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS sections (
        id TEXT PRIMARY KEY,
        course_id TEXT,
        capacity INTEGER NOT NULL CHECK (capacity > 0),
        enrolled_count INTEGER NOT NULL DEFAULT 0 CHECK (enrolled_count >= 0),
        status TEXT NOT NULL DEFAULT 'OPEN',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS enrollments (
        id TEXT PRIMARY KEY,
        student_id TEXT NOT NULL,
        section_id TEXT NOT NULL REFERENCES sections(id),
        status TEXT NOT NULL,
        override INTEGER NOT NULL DEFAULT 0,
        grade TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        ended_at TEXT,
        version INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_enrollments_open_pair
        ON enrollments(student_id, section_id)
        WHERE status IN ('ACTIVE', 'WAITLISTED')
    """,
    "CREATE INDEX IF NOT EXISTS idx_enrollments_section ON enrollments(section_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_enrollments_student ON enrollments(student_id)",
    """
    CREATE TABLE IF NOT EXISTS waitlist_entries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        section_id TEXT NOT NULL REFERENCES sections(id),
        student_id TEXT NOT NULL,
        position INTEGER NOT NULL CHECK (position >= 1),
        joined_at TEXT NOT NULL,
        UNIQUE (section_id, student_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_waitlist_section_position ON waitlist_entries(section_id, position)",
    """
    CREATE TABLE IF NOT EXISTS override_records (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT UNIQUE NOT NULL,
        actor_id TEXT NOT NULL,
        student_id TEXT NOT NULL,
        section_id TEXT NOT NULL,
        reason TEXT NOT NULL,
        outcome TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_overrides_section ON override_records(section_id)",
    "CREATE INDEX IF NOT EXISTS idx_overrides_student ON override_records(student_id)",
    """
    CREATE TABLE IF NOT EXISTS audit_events (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT UNIQUE NOT NULL,
        event_type TEXT NOT NULL,
        section_id TEXT NOT NULL,
        student_id TEXT NOT NULL,
        enrollment_id TEXT,
        actor_id TEXT,
        details TEXT NOT NULL,
        created_at TEXT NOT NULL,
        prev_hash TEXT,
        hash TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_section ON audit_events(section_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_student ON audit_events(student_id)",
]

# Both audit tables reject UPDATE and DELETE at the storage level.
APPEND_ONLY_TABLES = ("override_records", "audit_events")


def _append_only_triggers() -> List[str]:
    statements = []
    for table in APPEND_ONLY_TABLES:
        for action in ("UPDATE", "DELETE"):
            statements.append(f"""
                CREATE TRIGGER IF NOT EXISTS trg_{table}_no_{action.lower()}
                BEFORE {action} ON {table}
                BEGIN
                    SELECT RAISE(ABORT, '{table} is append-only');
                END
            """)
    return statements


def _is_lock_contention(error: sqlite3.Error) -> bool:
    text = str(error).lower()
    return isinstance(error, sqlite3.OperationalError) and ("locked" in text or "busy" in text)


class DatabaseManager(ABC):
    """Abstract base class for database management."""

    @abstractmethod
    def transaction(self) -> Iterator[Any]:
        """Open a write transaction and yield its connection."""
        pass

    @abstractmethod
    def snapshot(self) -> Iterator[Any]:
        """Yield a connection with a consistent read view."""
        pass



class SQLiteDatabase(DatabaseManager):
    """SQLite database implementation.

    Every write goes through :meth:`transaction`, which takes the database
    write lock up front (``BEGIN IMMEDIATE``). Lock contention that outlasts
    the busy timeout surfaces as :class:`ConcurrencyConflictError` so callers
    can retry; any other ``sqlite3`` failure becomes :class:`PersistenceError`.
    Domain exceptions raised inside the block roll the transaction back and
    propagate unchanged.
    """

    def __init__(self, database_path: str = "registrar.db", busy_timeout: float = 1.0):
        self._database_path = database_path
        self._busy_timeout = busy_timeout
        self._lock = threading.RLock()
        self._initialize_database()

    @property
    def database_path(self) -> str:
        return self._database_path

    def _initialize_database(self) -> None:
        """Initialize the database with the enrollment schema."""
        with self._lock:
            conn = self.connect()
            try:
                conn.execute("PRAGMA journal_mode=WAL")
                for statement in SCHEMA + _append_only_triggers():
                    conn.execute(statement)
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to initialize schema: {str(e)}")
            finally:
                conn.close()
        logger.debug("Initialized SQLite schema at %s", self._database_path)

    def connect(self) -> sqlite3.Connection:
        """Create a database connection in autocommit mode."""
        conn = sqlite3.connect(
            self._database_path,
            timeout=self._busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one atomic write transaction."""
        conn = self.connect()
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                if _is_lock_contention(e):
                    raise ConcurrencyConflictError(f"Database busy: {str(e)}")
                raise PersistenceError(f"Could not begin transaction: {str(e)}")
            try:
                yield conn
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback(conn)
                if _is_lock_contention(e):
                    raise ConcurrencyConflictError(f"Write conflict: {str(e)}")
                raise PersistenceError(f"Transaction failed: {str(e)}")
            except BaseException:
                self._rollback(conn)
                raise
        finally:
            conn.close()

    @contextmanager
    def snapshot(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside a read transaction (one consistent view)."""
        conn = self.connect()
        try:
            conn.execute("BEGIN")
            yield conn
        except sqlite3.Error as e:
            raise PersistenceError(f"Read failed: {str(e)}")
        finally:
            self._rollback(conn)
            conn.close()

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

