"""Append-only conversation log with soft retirement on reset."""

from __future__ import annotations

import json
import sqlite3
from typing import Iterable

from assistant.errors import PersistenceError
from assistant.messages import ContentPart, Message, PartType, Role

CONTENT_TEXT = "text"
CONTENT_PARTS = "parts"


def _serialize(message: Message) -> tuple[str, str]:
    if message.is_empty():
        raise PersistenceError("Refusing to store a message with empty content")
    if isinstance(message.content, str):
        return message.content, CONTENT_TEXT
    parts = [
        {"type": part.type.value, "text": part.text, "image_url": part.image_url}
        for part in message.content
    ]
    return json.dumps(parts, ensure_ascii=True), CONTENT_PARTS


def _deserialize(row: sqlite3.Row) -> Message:
    content: str | tuple[ContentPart, ...]
    if row["content_type"] == CONTENT_PARTS:
        content = tuple(
            ContentPart(PartType(item["type"]), text=item.get("text", ""), image_url=item.get("image_url", ""))
            for item in json.loads(row["content"])
        )
    else:
        content = row["content"]
    return Message(Role(row["role"]), content, chat_id=row["chat_id"], user_id=row["user_id"])


class MessageStore:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def add(self, message: Message) -> int:
        ids = self.add_batch([message])
        return ids[0]

    def add_batch(self, messages: Iterable[Message]) -> list[int]:
        """Insert all messages in one transaction; nothing is stored on failure."""
        rows = []
        for message in messages:
            if message.chat_id is None:
                raise PersistenceError("Message has no chat_id")
            content, content_type = _serialize(message)
            rows.append((message.role.value, content, content_type, message.chat_id, message.user_id))
        ids: list[int] = []
        try:
            with self._conn:
                for row in rows:
                    cursor = self._conn.execute(
                        """
                        INSERT INTO messages (role, content, content_type, chat_id, user_id)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        row,
                    )
                    ids.append(int(cursor.lastrowid))
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to store messages: {exc}") from exc
        return ids

    def active_history(self, chat_id: int, *, since_hours: int | None = None) -> list[Message]:
        if since_hours is None:
            rows = self._conn.execute(
                """
                SELECT role, content, content_type, chat_id, user_id
                FROM messages
                WHERE chat_id = ? AND is_active = 1
                ORDER BY id
                """,
                (chat_id,),
            ).fetchall()
        else:
            rows = self._conn.execute(
                """
                SELECT role, content, content_type, chat_id, user_id
                FROM messages
                WHERE chat_id = ? AND is_active = 1 AND created_at >= datetime('now', ?)
                ORDER BY id
                """,
                (chat_id, f"-{int(since_hours)} hours"),
            ).fetchall()
        return [_deserialize(row) for row in rows]

    def deactivate_chat(self, chat_id: int) -> int:
        try:
            with self._conn:
                cursor = self._conn.execute(
                    "UPDATE messages SET is_active = 0 WHERE chat_id = ? AND is_active = 1",
                    (chat_id,),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to reset chat {chat_id}: {exc}") from exc
        return cursor.rowcount
