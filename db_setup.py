import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

import structlog

from config import Settings
from errors import ConflictError

logger = structlog.get_logger()


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def init_db(settings: Settings):
    conn = get_db_connection(settings)
    cursor = conn.cursor()

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS Contact (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            phoneNumber TEXT,
            email TEXT,
            linkedId INTEGER,
            linkPrecedence TEXT NOT NULL CHECK(linkPrecedence IN ('secondary', 'primary')),
            createdAt TEXT NOT NULL,
            updatedAt TEXT NOT NULL,
            deletedAt TEXT,
            FOREIGN KEY (linkedId) REFERENCES Contact (id),
            CHECK (email IS NOT NULL OR phoneNumber IS NOT NULL)
        )
    ''')
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_contact_email ON Contact (email)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_contact_phone ON Contact (phoneNumber)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_contact_linked ON Contact (linkedId)")

    conn.close()
    logger.info("Database initialized", database_path=settings.database_path)


def get_db_connection(settings: Settings) -> sqlite3.Connection:
    # isolation_level=None: transactions are opened explicitly by transaction()
    conn = sqlite3.connect(
        settings.database_path,
        timeout=settings.database_busy_timeout,
        isolation_level=None,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def _is_lock_contention(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        conn.execute("ROLLBACK")


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the enclosed block as one write-locked transaction.

    ``BEGIN IMMEDIATE`` takes the database write lock before the first read,
    so concurrent transactions touching the table run one after another.
    Lock contention that outlasts the busy timeout is raised as
    ``ConflictError``; any exception rolls the transaction back.
    """
    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.OperationalError as exc:
        if _is_lock_contention(exc):
            raise ConflictError("Timed out waiting for the contact store lock") from exc
        raise

    try:
        yield conn
        conn.execute("COMMIT")
    except sqlite3.OperationalError as exc:
        _rollback(conn)
        if _is_lock_contention(exc):
            raise ConflictError("Contact store transaction conflicted") from exc
        raise
    except BaseException:
        _rollback(conn)
        raise
