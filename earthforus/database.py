import sqlite3
from typing import Optional

from earthforus.config import DATABASE_PATH

DB_PATH = DATABASE_PATH


def get_db():
    """Get database connection."""
    conn = sqlite3.connect(DB_PATH, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    # Enable foreign keys
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def db_session():
    """FastAPI dependency yielding a connection closed after the request."""
    conn = get_db()
    try:
        yield conn
    finally:
        conn.close()


def init_db():
    """Initialize database schema."""
    conn = get_db()
    cursor = conn.cursor()

    # Chat messages, one row per message posted to an event
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS event_chat_messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            event_id INTEGER NOT NULL,
            user_id INTEGER NOT NULL,
            user_name TEXT NOT NULL,
            message TEXT NOT NULL,
            is_system BOOLEAN NOT NULL DEFAULT 0,
            created_at TIMESTAMP NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
        )
    """)

    # Backfill is_system column for existing databases
    cursor.execute("PRAGMA table_info(event_chat_messages)")
    columns = [row[1] for row in cursor.fetchall()]
    if "is_system" not in columns:
        cursor.execute(
            "ALTER TABLE event_chat_messages ADD COLUMN is_system BOOLEAN NOT NULL DEFAULT 0"
        )

    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_chat_messages_event ON event_chat_messages(event_id, created_at)"
    )

    conn.commit()
    conn.close()


def dict_from_row(row: sqlite3.Row) -> Optional[dict]:
    """Convert sqlite3.Row to dict."""
    return dict(row) if row else None
