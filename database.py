import logging
import os
import sqlite3
import sys
import tempfile
from contextlib import contextmanager
from typing import Iterator, Optional

from dotenv import load_dotenv

from config import settings

# .env must be loaded before DATABASE_FILE is resolved, whatever the import order.
load_dotenv()

logger = logging.getLogger(__name__)

# Default database file. Priority:
# 1) LIBRARY_DB_FILE (explicit override, also read by config.py)
# 2) a per-process temp file
DATABASE_FILE = settings.database_file or os.path.join(
    tempfile.gettempdir(), f"library_{os.getpid()}.db"
)


def _is_test_env() -> bool:
    return bool(os.environ.get("PYTEST_CURRENT_TEST")) or "pytest" in sys.modules


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite store.

    Connections run in autocommit mode (``isolation_level=None``) so that
    ``transaction`` controls BEGIN/COMMIT explicitly.
    """
    conn = sqlite3.connect(
        db_file or DATABASE_FILE,
        timeout=settings.database_busy_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    if not _is_test_env():
        # WAL lets readers proceed while a lending transaction holds the write lock
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


@contextmanager
def transaction(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """One atomic unit of work.

    ``BEGIN IMMEDIATE`` takes the write lock before the first read, so two
    operations on the same member or book are serialized and never act on
    stale counters. Any exception rolls everything back.
    """
    conn = get_db_connection(db_file)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")
    finally:
        conn.close()


@contextmanager
def read_only(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    conn = get_db_connection(db_file)
    try:
        yield conn
    finally:
        conn.close()


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        user_id INTEGER PRIMARY KEY AUTOINCREMENT,
        email TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        role TEXT NOT NULL CHECK(role IN ('Member', 'Librarian', 'Admin')),
        phone TEXT,
        address TEXT,
        city TEXT,
        postal_code TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        registration_date TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS members (
        member_id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL UNIQUE REFERENCES users(user_id),
        card_number TEXT NOT NULL,
        status TEXT NOT NULL CHECK(status IN ('Active', 'Suspended', 'Expired')),
        fines_owed_cents INTEGER NOT NULL DEFAULT 0 CHECK(fines_owed_cents >= 0),
        current_books_count INTEGER NOT NULL DEFAULT 0 CHECK(current_books_count >= 0),
        max_books_allowed INTEGER NOT NULL DEFAULT 3,
        membership_date TEXT,
        expiry_date TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS librarians (
        librarian_id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL UNIQUE REFERENCES users(user_id),
        employee_id TEXT NOT NULL,
        department TEXT,
        hire_date TEXT,
        is_admin INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS books (
        book_id INTEGER PRIMARY KEY AUTOINCREMENT,
        isbn TEXT NOT NULL UNIQUE,
        title TEXT NOT NULL,
        author TEXT NOT NULL DEFAULT '',
        publisher TEXT,
        category TEXT,
        publication_year INTEGER,
        language TEXT DEFAULT 'English',
        description TEXT,
        total_copies INTEGER NOT NULL DEFAULT 0,
        available_copies INTEGER NOT NULL DEFAULT 0,
        is_retired INTEGER NOT NULL DEFAULT 0,
        created_at TEXT,
        CHECK(available_copies >= 0 AND available_copies <= total_copies)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS book_copies (
        copy_id INTEGER PRIMARY KEY AUTOINCREMENT,
        book_id INTEGER NOT NULL REFERENCES books(book_id),
        barcode TEXT NOT NULL UNIQUE,
        status TEXT NOT NULL CHECK(status IN ('Available', 'Borrowed', 'Reserved', 'Maintenance', 'Lost')),
        condition TEXT NOT NULL DEFAULT 'New',
        acquisition_date TEXT,
        last_borrowed_date TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS loans (
        loan_id INTEGER PRIMARY KEY AUTOINCREMENT,
        member_id INTEGER NOT NULL REFERENCES members(member_id),
        copy_id INTEGER NOT NULL REFERENCES book_copies(copy_id),
        librarian_id INTEGER REFERENCES librarians(librarian_id),
        loan_date TEXT NOT NULL,
        due_date TEXT NOT NULL,
        return_date TEXT,
        status TEXT NOT NULL CHECK(status IN ('Active', 'Returned', 'Overdue', 'Lost')),
        fine_amount_cents INTEGER NOT NULL DEFAULT 0,
        fine_paid INTEGER NOT NULL DEFAULT 0,
        renewal_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reservations (
        reservation_id INTEGER PRIMARY KEY AUTOINCREMENT,
        member_id INTEGER NOT NULL REFERENCES members(member_id),
        book_id INTEGER NOT NULL REFERENCES books(book_id),
        queue_position INTEGER NOT NULL,
        reservation_date TEXT NOT NULL,
        status TEXT NOT NULL CHECK(status IN ('Pending', 'Ready', 'Fulfilled', 'Cancelled', 'Expired')),
        assigned_copy_id INTEGER REFERENCES book_copies(copy_id),
        available_date TEXT,
        expiry_date TEXT,
        fulfilled_date TEXT,
        UNIQUE(book_id, queue_position)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS library_settings (
        setting_key TEXT PRIMARY KEY,
        setting_value TEXT NOT NULL,
        description TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_copies_book ON book_copies(book_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_loans_member ON loans(member_id, return_date)",
    "CREATE INDEX IF NOT EXISTS idx_loans_copy ON loans(copy_id)",
    "CREATE INDEX IF NOT EXISTS idx_reservations_book ON reservations(book_id, status, queue_position)",
    "CREATE INDEX IF NOT EXISTS idx_reservations_member ON reservations(member_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_books_created_at ON books(created_at)",
]


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the lending tables if they do not exist yet."""
    with transaction(db_file) as conn:
        for statement in SCHEMA:
            conn.execute(statement)


def initialize_database(db_file: Optional[str] = None) -> None:
    create_tables(db_file)
    logger.debug(f"Database ready at {db_file or DATABASE_FILE}")
