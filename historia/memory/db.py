# historia/memory/db.py

import sqlite3
from pathlib import Path
from typing import Optional


def contains_ci(haystack: Optional[str], needle: Optional[str]) -> int:
    """
    SQL function backing conversation search. Mirrors the client-side
    predicate exactly (str.lower on both sides), unlike LIKE which only
    folds ASCII.
    """
    return int((needle or "").lower() in (haystack or "").lower())


def get_connection(db_path: str | Path) -> sqlite3.Connection:
    """
    Return a SQLite connection.
    Uses Row factory to allow dict-like access.
    Caller is responsible for closing.
    """
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.create_function("contains_ci", 2, contains_ci, deterministic=True)
    return conn


def init_db(db_path: str | Path) -> None:
    """
    Initialize the database schema if it does not exist.
    Safe to call multiple times.
    """
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = get_connection(db_path)
    cur = conn.cursor()

    # conversations: one per chat with a persona
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS conversations (
            id TEXT PRIMARY KEY DEFAULT (lower(hex(randomblob(16)))),
            user_id TEXT NOT NULL,
            character_id TEXT NOT NULL,
            title TEXT NOT NULL,
            preview TEXT,
            is_bookmarked INTEGER NOT NULL DEFAULT 0,
            message_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            last_message_at TEXT NOT NULL
        )
        """
    )

    # conversation_messages: user and persona turns
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS conversation_messages (
            id TEXT PRIMARY KEY,
            conversation_id TEXT NOT NULL,
            content TEXT NOT NULL,
            sender_id TEXT NOT NULL,
            sender_name TEXT NOT NULL,
            is_from_user INTEGER NOT NULL,  -- 1 user, 0 persona
            timestamp TEXT NOT NULL,
            image_url TEXT,
            image_name TEXT,
            has_image INTEGER NOT NULL DEFAULT 0,
            FOREIGN KEY (conversation_id) REFERENCES conversations (id) ON DELETE CASCADE
        )
        """
    )

    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_conversations_user_last "
        "ON conversations (user_id, last_message_at)"
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_messages_conversation_ts "
        "ON conversation_messages (conversation_id, timestamp)"
    )

    conn.commit()
    conn.close()
