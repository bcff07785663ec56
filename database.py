import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, List, Optional, Sequence, TypeVar

from config import Settings, settings as default_settings
from errors import ConflictError, StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _fold(value: Optional[str]) -> Optional[str]:
    return value.casefold() if value is not None else None


def _translate(exc: sqlite3.Error) -> Exception:
    """Map a raw sqlite3 fault onto the caller-facing error kinds."""
    message = str(exc).lower()
    if isinstance(exc, sqlite3.OperationalError) and ("locked" in message or "busy" in message):
        return ConflictError("The database is busy and the transaction could not be serialized. Please retry.")
    logger.error(f"Unexpected storage error: {exc}")
    return StorageError("Unexpected storage error.")


class Transaction:
    """An open write transaction.

    ``now`` is taken once when the transaction starts and is used as the
    server timestamp for every row written through it.
    """

    def __init__(self, conn: sqlite3.Connection, now: datetime) -> None:
        self.conn = conn
        self.now = now

    @property
    def timestamp(self) -> str:
        return self.now.isoformat(timespec="microseconds")

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        return self.conn.execute(sql, params)

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        return self.conn.execute(sql, params).fetchone()


class Database:
    """SQLite-backed store shared by the registry, the ledger and favorites.

    Every component receives this object explicitly. Each operation opens its
    own connection, so any number of threads may use one instance.
    """

    def __init__(self, db_file: Optional[str] = None, settings: Optional[Settings] = None,
                 clock: Optional[Callable[[], datetime]] = None) -> None:
        self.settings = settings or default_settings
        self.db_file = db_file or self.settings.database_file
        self.clock = clock or utc_now

    def connect(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are opened explicitly with BEGIN IMMEDIATE
        conn = sqlite3.connect(self.db_file, timeout=self.settings.database_busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        # SQLite lower() only folds ASCII
        conn.create_function("casefold", 1, _fold, deterministic=True)
        conn.execute("PRAGMA foreign_keys=ON;")
        return conn

    def initialize(self) -> None:
        """Create tables and indexes if they do not exist yet."""
        with self.connection() as conn:
            # WAL is persistent for the file; readers never wait on the writer
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS books (
                    key TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    authors TEXT NOT NULL DEFAULT '[]',
                    first_publish_year INTEGER,
                    isbns TEXT NOT NULL DEFAULT '[]',
                    cover_id INTEGER,
                    olid TEXT,
                    cover_url_small TEXT,
                    cover_url_medium TEXT,
                    cover_url_large TEXT,
                    description TEXT,
                    quantity INTEGER CHECK (quantity IS NULL OR quantity >= 0),
                    available_quantity INTEGER CHECK (
                        available_quantity IS NULL
                        OR (available_quantity >= 0 AND available_quantity <= quantity)
                    ),
                    last_accessed_at TEXT,
                    created_at TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS loans (
                    id TEXT PRIMARY KEY,
                    admin_id TEXT NOT NULL,
                    admin_name TEXT,
                    admin_email TEXT,
                    borrower_name TEXT NOT NULL,
                    borrower_national_id TEXT NOT NULL,
                    book_key TEXT NOT NULL REFERENCES books(key),
                    book_title TEXT NOT NULL,
                    loan_date TEXT NOT NULL,
                    due_date TEXT NOT NULL,
                    status TEXT NOT NULL,
                    return_date TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS favorites (
                    user_id TEXT NOT NULL,
                    book_key TEXT NOT NULL REFERENCES books(key),
                    favorited_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, book_key)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title COLLATE NOCASE)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_loans_admin_id ON loans(admin_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_loans_book_status ON loans(book_key, status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_loans_status_date ON loans(status, loan_date DESC)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_favorites_user_time ON favorites(user_id, favorited_at DESC)")

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """A plain autocommit connection for reads and schema work."""
        try:
            conn = self.connect()
        except sqlite3.Error as exc:
            raise _translate(exc) from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            raise _translate(exc) from exc
        finally:
            conn.close()

    @contextmanager
    def transaction(self, timeout: Optional[float] = None) -> Iterator[Transaction]:
        """Run the body as one all-or-nothing write transaction.

        The write lock is taken up front (BEGIN IMMEDIATE) so a read followed by
        a write inside the body is serializable against other writers. If
        ``timeout`` seconds pass before commit, everything is rolled back.
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        try:
            conn = self.connect()
        except sqlite3.Error as exc:
            raise _translate(exc) from exc
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield Transaction(conn, self.clock())
                if deadline is not None and time.monotonic() >= deadline:
                    raise ConflictError("Transaction deadline exceeded before commit. Nothing was applied.")
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        except sqlite3.Error as exc:
            raise _translate(exc) from exc
        finally:
            conn.close()

    def run_in_transaction(self, fn: Callable[[Transaction], T], timeout: Optional[float] = None) -> T:
        """Call ``fn`` inside a transaction, retrying when the store reports a conflict.

        ``fn`` must do all of its reads through the transaction it is given so
        that a retry re-reads fresh state.
        """
        attempts = max(1, self.settings.transaction_max_attempts)
        deadline = time.monotonic() + timeout if timeout is not None else None
        for attempt in range(1, attempts + 1):
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                with self.transaction(timeout=remaining) as tx:
                    return fn(tx)
            except ConflictError:
                if attempt >= attempts or (deadline is not None and time.monotonic() >= deadline):
                    raise
                wait_time = self.settings.transaction_retry_backoff * (2 ** (attempt - 1))
                logger.warning(f"Transaction conflict (attempt {attempt}/{attempts}), retrying in {wait_time:.3f}s")
                time.sleep(wait_time)
        raise ConflictError("Transaction could not be completed.")

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self.connection() as conn:
            return conn.execute(sql, params).fetchall()

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self.connection() as conn:
            return conn.execute(sql, params).fetchone()

    def ping(self) -> bool:
        try:
            self.fetch_one("SELECT 1")
            return True
        except Exception:
            return False
