# historia/memory/repository.py

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from historia.memory.db import get_connection, init_db


class StoreError(RuntimeError):
    """A store read or write failed."""


class TextSearchUnavailable(StoreError):
    """The store cannot run a text search right now; callers may filter locally."""


class ConversationNotFound(StoreError):
    """No conversation with that id belongs to the caller."""


class ConversationStore(Protocol):
    """Row-level access to the conversations and conversation_messages tables."""

    def insert_conversation(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a conversation row and return it with its store-assigned id."""

    def get_conversation(self, conversation_id: str, *, owner_id: str) -> Optional[Dict[str, Any]]:
        ...

    def update_conversation(self, conversation_id: str, fields: Dict[str, Any], *, owner_id: str) -> None:
        ...

    def delete_conversation(self, conversation_id: str, *, owner_id: str) -> None:
        ...

    def list_conversations(
        self,
        *,
        owner_id: str,
        bookmarked_only: bool = False,
        newest_first: bool = True,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        ...

    def search_conversations(self, *, owner_id: str, text: str) -> List[Dict[str, Any]]:
        """Case-insensitive substring search over title/preview, newest first."""

    def count_conversations(self, *, owner_id: str) -> int:
        ...

    def insert_turn(self, turn_row: Dict[str, Any], *, owner_id: str, preview: str, at: str) -> None:
        """
        Insert a message row and refresh the parent's preview/updated_at/last_message_at/message_count.
        Raises ConversationNotFound when the parent is not owner_id's.
        """

    def list_turns(self, conversation_id: str, *, owner_id: str) -> List[Dict[str, Any]]:
        """Message rows of one of owner_id's conversations, oldest first."""

    def has_image_turns(self, conversation_id: str, *, owner_id: str) -> bool:
        ...

    def ping(self) -> bool:
        ...


def _row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    return {key: row[key] for key in row.keys()}


class SQLiteConversationStore:
    """Local store; opens a short-lived connection per call."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)

    def initialize(self) -> None:
        """
        Initialize DB schema. Call once at startup.
        """
        init_db(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        try:
            return get_connection(self.db_path)
        except sqlite3.Error as e:
            raise StoreError(f"cannot open {self.db_path}: {e}") from e

    # ------------------ conversations ------------------
    def insert_conversation(self, row: Dict[str, Any]) -> Dict[str, Any]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO conversations
                    (user_id, character_id, title, preview, is_bookmarked,
                     message_count, created_at, updated_at, last_message_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    row["user_id"],
                    row["character_id"],
                    row["title"],
                    row.get("preview"),
                    int(bool(row.get("is_bookmarked", False))),
                    int(row.get("message_count", 0)),
                    row["created_at"],
                    row["updated_at"],
                    row["last_message_at"],
                ),
            )
            cur.execute("SELECT * FROM conversations WHERE rowid = ?", (cur.lastrowid,))
            inserted = cur.fetchone()
            conn.commit()
            return _row_to_dict(inserted)
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"insert conversation failed: {e}") from e
        finally:
            conn.close()

    def get_conversation(self, conversation_id: str, *, owner_id: str) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT * FROM conversations WHERE id = ? AND user_id = ?",
                (conversation_id, owner_id),
            )
            row = cur.fetchone()
            return _row_to_dict(row) if row is not None else None
        except sqlite3.Error as e:
            raise StoreError(f"get conversation failed: {e}") from e
        finally:
            conn.close()

    def update_conversation(self, conversation_id: str, fields: Dict[str, Any], *, owner_id: str) -> None:
        allowed = {"title", "preview", "is_bookmarked", "updated_at", "last_message_at", "message_count"}
        unknown = set(fields) - allowed
        if unknown:
            raise StoreError(f"cannot update conversation columns: {sorted(unknown)}")
        if not fields:
            return

        columns = sorted(fields)
        assignments = ", ".join(f"{c} = ?" for c in columns)
        values = [int(fields[c]) if c == "is_bookmarked" else fields[c] for c in columns]

        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                f"UPDATE conversations SET {assignments} WHERE id = ? AND user_id = ?",
                (*values, conversation_id, owner_id),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"update conversation failed: {e}") from e
        finally:
            conn.close()

    def delete_conversation(self, conversation_id: str, *, owner_id: str) -> None:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                "DELETE FROM conversations WHERE id = ? AND user_id = ?",
                (conversation_id, owner_id),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"delete conversation failed: {e}") from e
        finally:
            conn.close()

    def list_conversations(
        self,
        *,
        owner_id: str,
        bookmarked_only: bool = False,
        newest_first: bool = True,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        direction = "DESC" if newest_first else "ASC"
        where = "user_id = ?"
        params: List[Any] = [owner_id]
        if bookmarked_only:
            where += " AND is_bookmarked = 1"

        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                f"""
                SELECT * FROM conversations
                WHERE {where}
                ORDER BY last_message_at {direction}, id {direction}
                LIMIT ? OFFSET ?
                """,
                (*params, limit, offset),
            )
            return [_row_to_dict(r) for r in cur.fetchall()]
        except sqlite3.Error as e:
            raise StoreError(f"list conversations failed: {e}") from e
        finally:
            conn.close()

    def search_conversations(self, *, owner_id: str, text: str) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT * FROM conversations
                WHERE user_id = ?
                  AND (contains_ci(title, ?) OR contains_ci(preview, ?))
                ORDER BY last_message_at DESC, id DESC
                """,
                (owner_id, text, text),
            )
            return [_row_to_dict(r) for r in cur.fetchall()]
        except sqlite3.Error as e:
            raise TextSearchUnavailable(f"search failed: {e}") from e
        finally:
            conn.close()

    def count_conversations(self, *, owner_id: str) -> int:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) FROM conversations WHERE user_id = ?", (owner_id,))
            return int(cur.fetchone()[0])
        except sqlite3.Error as e:
            raise StoreError(f"count conversations failed: {e}") from e
        finally:
            conn.close()

    # ------------------ turns -------------------
    def insert_turn(self, turn_row: Dict[str, Any], *, owner_id: str, preview: str, at: str) -> None:
        conversation_id = turn_row["conversation_id"]
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT 1 FROM conversations WHERE id = ? AND user_id = ?",
                (conversation_id, owner_id),
            )
            if cur.fetchone() is None:
                raise ConversationNotFound(f"conversation {conversation_id} not found")
            cur.execute(
                """
                INSERT INTO conversation_messages
                    (id, conversation_id, content, sender_id, sender_name,
                     is_from_user, timestamp, image_url, image_name, has_image)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    turn_row["id"],
                    conversation_id,
                    turn_row["content"],
                    turn_row["sender_id"],
                    turn_row["sender_name"],
                    int(bool(turn_row["is_from_user"])),
                    turn_row["timestamp"],
                    turn_row.get("image_url"),
                    turn_row.get("image_name"),
                    int(bool(turn_row.get("has_image"))),
                ),
            )
            cur.execute(
                """
                UPDATE conversations
                SET preview = ?, updated_at = ?, last_message_at = ?,
                    message_count = message_count + 1
                WHERE id = ? AND user_id = ?
                """,
                (preview, at, at, conversation_id, owner_id),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"insert turn failed: {e}") from e
        finally:
            conn.close()

    def list_turns(self, conversation_id: str, *, owner_id: str) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT m.* FROM conversation_messages AS m
                JOIN conversations AS c ON c.id = m.conversation_id
                WHERE m.conversation_id = ? AND c.user_id = ?
                ORDER BY m.timestamp ASC, m.rowid ASC
                """,
                (conversation_id, owner_id),
            )
            return [_row_to_dict(r) for r in cur.fetchall()]
        except sqlite3.Error as e:
            raise StoreError(f"list turns failed: {e}") from e
        finally:
            conn.close()

    def has_image_turns(self, conversation_id: str, *, owner_id: str) -> bool:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT 1 FROM conversation_messages AS m
                JOIN conversations AS c ON c.id = m.conversation_id
                WHERE m.conversation_id = ? AND c.user_id = ? AND m.has_image = 1
                LIMIT 1
                """,
                (conversation_id, owner_id),
            )
            return cur.fetchone() is not None
        except sqlite3.Error as e:
            raise StoreError(f"image lookup failed: {e}") from e
        finally:
            conn.close()

    def ping(self) -> bool:
        try:
            conn = self._connect()
        except StoreError:
            return False
        try:
            conn.execute("SELECT id FROM conversations LIMIT 1")
            return True
        except sqlite3.Error:
            return False
        finally:
            conn.close()
