import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from bidledger.core.errors import ConcurrencyError, ErrorKind, classify_operational_error
from bidledger.utils.logger import get_logger

logger = get_logger("storage.sqlite")


class RowLockManager:
    """
    Exclusive locks keyed by row identity with bounded wait.

    Keys look like "credit:<buyer>:<seller>" or "order:<order_id>". An entry
    lives only while someone holds or waits on it.
    """

    def __init__(self):
        self._mutex = threading.Lock()
        self._locks: Dict[str, List] = {}  # key -> [lock, refcount]

    def acquire(self, key: str, timeout: float) -> bool:
        with self._mutex:
            slot = self._locks.setdefault(key, [threading.Lock(), 0])
            slot[1] += 1
        acquired = slot[0].acquire(timeout=max(timeout, 0))
        if not acquired:
            self._drop_ref(key)
        return acquired

    def release(self, key: str) -> None:
        with self._mutex:
            slot = self._locks[key]
        slot[0].release()
        self._drop_ref(key)

    def _drop_ref(self, key: str) -> None:
        with self._mutex:
            slot = self._locks.get(key)
            if slot is None:
                return
            slot[1] -= 1
            if slot[1] <= 0:
                del self._locks[key]

    def held_keys(self) -> List[str]:
        with self._mutex:
            return [k for k, (lock, _) in self._locks.items() if lock.locked()]


class SQLiteAdapter:
    """
    SQLite backend for persistent storage.

    Provides:
    1. Schema for credit relationships, the ledger, sellers, orders,
       offers and the audit trail.
    2. Thread-local connections in autocommit mode for unlocked reads. A
       connection lives until its thread calls close(); worker threads run
       inside thread_scope() so they do not leave one behind.
    3. unit_of_work(): a row-scoped exclusive lock plus a BEGIN IMMEDIATE
       transaction, so the holder reads fresh state and commits atomically.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._conn_local = threading.local()
        self.row_locks = RowLockManager()

        if not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create connection for current thread."""
        if not hasattr(self._conn_local, "conn"):
            conn = sqlite3.connect(
                self.db_path,
                timeout=30.0,
                check_same_thread=False,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA foreign_keys=ON;")
            self._conn_local.conn = conn
        return self._conn_local.conn

    def close(self) -> None:
        """Close the current thread's connection."""
        conn = getattr(self._conn_local, "conn", None)
        if conn is not None:
            conn.close()
            del self._conn_local.conn

    @contextmanager
    def thread_scope(self) -> Iterator["SQLiteAdapter"]:
        """
        Close the connection this block opens when it exits.

        Connections live until their thread calls close(), so short-lived
        worker threads should run their calls inside this scope. A
        connection the thread already had is left open.
        """
        opened_here = not hasattr(self._conn_local, "conn")
        try:
            yield self
        finally:
            if opened_here:
                self.close()

    def _init_schema(self):
        """Initialize database schema."""
        conn = self._get_conn()
        conn.executescript("""
            BEGIN;

            CREATE TABLE IF NOT EXISTS credit_relationships (
                buyer_id TEXT NOT NULL,
                seller_id TEXT NOT NULL,
                credit_limit REAL NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                blocked_reason TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                PRIMARY KEY (buyer_id, seller_id)
            );

            CREATE TABLE IF NOT EXISTS ledger_entries (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                entry_id TEXT NOT NULL UNIQUE,
                buyer_id TEXT NOT NULL,
                seller_id TEXT NOT NULL,
                order_ref TEXT,
                kind TEXT NOT NULL,
                amount REAL NOT NULL,
                balance_after REAL NOT NULL,
                created_by TEXT NOT NULL,
                created_at REAL NOT NULL,
                reverses_entry_id TEXT UNIQUE,
                FOREIGN KEY (buyer_id, seller_id)
                    REFERENCES credit_relationships (buyer_id, seller_id)
            );
            -- Pair history is read in insertion order
            DROP INDEX IF EXISTS idx_ledger_pair;
            CREATE INDEX IF NOT EXISTS idx_ledger_pair_seq
                ON ledger_entries (buyer_id, seller_id, seq);
            CREATE INDEX IF NOT EXISTS idx_ledger_order ON ledger_entries (order_ref);

            -- Entries are append-only
            CREATE TRIGGER IF NOT EXISTS ledger_entries_no_update
                BEFORE UPDATE ON ledger_entries
                BEGIN SELECT RAISE(ABORT, 'ledger entries are immutable'); END;
            CREATE TRIGGER IF NOT EXISTS ledger_entries_no_delete
                BEFORE DELETE ON ledger_entries
                BEGIN SELECT RAISE(ABORT, 'ledger entries are immutable'); END;

            CREATE TABLE IF NOT EXISTS sellers (
                seller_id TEXT PRIMARY KEY,
                name TEXT NOT NULL DEFAULT '',
                contact TEXT NOT NULL DEFAULT '',
                is_active INTEGER NOT NULL DEFAULT 1,
                deleted_at REAL,
                latitude REAL,
                longitude REAL,
                reliability_score REAL NOT NULL DEFAULT 50,
                total_orders INTEGER NOT NULL DEFAULT 0,
                completed_orders INTEGER NOT NULL DEFAULT 0,
                average_rating REAL NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS orders (
                order_id TEXT PRIMARY KEY,
                buyer_id TEXT NOT NULL,
                total_amount REAL NOT NULL,
                status TEXT NOT NULL,
                final_seller_id TEXT,
                expires_at REAL,
                debit_entry_id TEXT,
                latitude REAL,
                longitude REAL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_orders_status_expiry ON orders (status, expires_at);

            CREATE TABLE IF NOT EXISTS offers (
                offer_id TEXT PRIMARY KEY,
                order_id TEXT NOT NULL REFERENCES orders (order_id),
                seller_id TEXT NOT NULL REFERENCES sellers (seller_id),
                price_quote REAL NOT NULL,
                delivery_eta TEXT NOT NULL,
                stock_confirmed INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                UNIQUE (order_id, seller_id)
            );

            CREATE TABLE IF NOT EXISTS audit_records (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                record_id TEXT NOT NULL UNIQUE,
                action TEXT NOT NULL,
                target_id TEXT NOT NULL,
                actor TEXT NOT NULL,
                metadata TEXT NOT NULL,
                created_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_audit_target ON audit_records (target_id);

            COMMIT;
        """)

    # =========================================================================
    # Units of Work
    # =========================================================================

    @contextmanager
    def unit_of_work(
        self,
        lock_key: Optional[str] = None,
        timeout: float = 5.0,
    ) -> Iterator[sqlite3.Connection]:
        """
        Run a block under an exclusive row lock inside one transaction.

        The lock is taken before BEGIN and released after COMMIT/ROLLBACK,
        so no other holder of the same key can interleave a read.

        Args:
            lock_key: Row identity to serialize on (None = transaction only)
            timeout: Bounded wait for the row lock and the store's write lock

        Raises:
            ConcurrencyError: LOCK_TIMEOUT or DEADLOCK
        """
        if lock_key is not None and not self.row_locks.acquire(lock_key, timeout):
            raise ConcurrencyError(
                ErrorKind.LOCK_TIMEOUT,
                f"Could not lock {lock_key} within {timeout:.2f}s",
            )
        try:
            conn = self._get_conn()
            if conn.in_transaction:
                raise RuntimeError("Units of work do not nest")
            conn.execute(f"PRAGMA busy_timeout = {int(timeout * 1000)}")
            self._execute_classified(conn, "BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            try:
                self._execute_classified(conn, "COMMIT")
            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        finally:
            if lock_key is not None:
                self.row_locks.release(lock_key)

    @staticmethod
    def _execute_classified(conn: sqlite3.Connection, statement: str) -> None:
        try:
            conn.execute(statement)
        except sqlite3.OperationalError as e:
            classified = classify_operational_error(e)
            if classified is None:
                raise
            raise classified from e

    @contextmanager
    def savepoint(self, conn: sqlite3.Connection, name: str) -> Iterator[sqlite3.Connection]:
        """Nested rollback scope inside a unit of work."""
        conn.execute(f"SAVEPOINT {name}")
        try:
            yield conn
        except BaseException:
            conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        conn.execute(f"RELEASE SAVEPOINT {name}")

    # =========================================================================
    # Query Helpers
    # =========================================================================

    def reader(self, conn: Optional[sqlite3.Connection] = None) -> sqlite3.Connection:
        """Connection for a read: the caller's unit of work or autocommit."""
        return conn if conn is not None else self._get_conn()

    def fetch_one(self, sql: str, params=(), conn: Optional[sqlite3.Connection] = None):
        return self.reader(conn).execute(sql, params).fetchone()

    def fetch_all(self, sql: str, params=(), conn: Optional[sqlite3.Connection] = None):
        return self.reader(conn).execute(sql, params).fetchall()
