import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from library_app.config import settings

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE / LIBRARY_DATA_FILE from the environment (via settings)
# 2) library.db in the working directory
DATABASE_FILE = settings.db_file or "library.db"

# Largest value an INTEGER PRIMARY KEY can hold; larger ints cannot even be bound
MAX_ROW_ID = 2**63 - 1


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections run in autocommit mode; writes that must be atomic go through
    ``transaction()``. Foreign keys are switched on per connection because
    SQLite leaves them off by default and checkout rows rely on ON DELETE CASCADE.
    """
    conn = sqlite3.connect(
        db_file or DATABASE_FILE,
        timeout=settings.database_timeout,
        isolation_level=None,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block as one write transaction.

    BEGIN IMMEDIATE takes the database write lock up front, so two writers
    never interleave their read-check-write sequences: the second one waits
    (up to the busy timeout) and then sees the first one's committed state.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the tables if they do not exist yet."""
    conn = get_db_connection(db_file)
    try:
        # WAL is persistent: set once here, every later connection inherits it
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'user' CHECK(role IN ('user', 'admin', 'student')),
                registration_number TEXT UNIQUE,
                email TEXT UNIQUE,
                password_hash TEXT NOT NULL,
                faculty TEXT,
                course_of_study TEXT,
                intake_batch TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                isbn TEXT UNIQUE,
                subject TEXT,
                research_area TEXT,
                location TEXT,
                description TEXT,
                image_url TEXT,
                total_copies INTEGER NOT NULL DEFAULT 1 CHECK(total_copies >= 0),
                available_copies INTEGER NOT NULL DEFAULT 1
                    CHECK(available_copies >= 0 AND available_copies <= total_copies),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # A row with returned_at IS NULL is an active loan. Rows are only ever
        # removed through the cascades below.
        conn.execute("""
            CREATE TABLE IF NOT EXISTS checkouts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                book_id INTEGER NOT NULL,
                checked_out_at TEXT NOT NULL,
                returned_at TEXT,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE ON UPDATE CASCADE,
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE ON UPDATE CASCADE
            )
        """)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_checkouts_user_active ON checkouts(user_id, returned_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_checkouts_book_active ON checkouts(book_id, returned_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_checkouts_checked_out_at ON checkouts(checked_out_at DESC)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_users_role ON users(role)")
    finally:
        conn.close()


def cleanup_orphaned_checkouts(db_file: Optional[str] = None) -> int:
    """Delete checkout rows whose user or book no longer exists.

    Only needed for databases written while foreign keys were disabled.
    Returns the number of rows removed.
    """
    logger.info("Checking for orphaned checkout records...")
    conn = get_db_connection(db_file)
    try:
        with transaction(conn):
            by_user = conn.execute(
                "DELETE FROM checkouts WHERE user_id NOT IN (SELECT id FROM users)"
            ).rowcount
            by_book = conn.execute(
                "DELETE FROM checkouts WHERE book_id NOT IN (SELECT id FROM books)"
            ).rowcount
    finally:
        conn.close()

    total = by_user + by_book
    if total:
        logger.info(f"Cleaned up {total} orphaned checkout record(s)")
    else:
        logger.info("No orphaned checkout records found")
    return total


def initialize_database(db_file: Optional[str] = None, cleanup: Optional[bool] = None) -> None:
    """Create the schema and, if enabled, purge orphaned checkouts."""
    create_tables(db_file)
    if cleanup is None:
        cleanup = settings.cleanup_orphans_on_startup
    if cleanup:
        cleanup_orphaned_checkouts(db_file)
