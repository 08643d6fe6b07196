"""Audit event log: inbound messages, answers, commands and token usage."""

from __future__ import annotations

import sqlite3
from typing import Any

from assistant.errors import PersistenceError
from assistant.messages import Sender

_COLUMNS = (
    "type",
    "user_id",
    "user_is_bot",
    "user_language_code",
    "user_username",
    "chat_id",
    "chat_type",
    "message_role",
    "messages_type",
    "message_voice_duration",
    "message_command",
    "content_length",
    "usage_model",
    "usage_object",
    "usage_completion_tokens",
    "usage_prompt_tokens",
    "usage_total_tokens",
    "api_key_source",
)


class AuditEventStore:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def record(self, event_type: str, sender: Sender | None = None, **fields: Any) -> int:
        unknown = set(fields).difference(_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown event fields: {', '.join(sorted(unknown))}")
        values: dict[str, Any] = {"type": event_type}
        if sender is not None:
            values.update(
                user_id=sender.user_id,
                user_is_bot=int(sender.is_bot),
                user_language_code=sender.language_code,
                user_username=sender.username,
                chat_id=sender.chat_id,
                chat_type=sender.chat_type,
            )
        values.update(fields)
        columns = [c for c in _COLUMNS if c in values]
        placeholders = ", ".join(["?"] * len(columns))
        try:
            with self._conn:
                cursor = self._conn.execute(
                    f"INSERT INTO events ({', '.join(columns)}) VALUES ({placeholders})",
                    tuple(values[c] for c in columns),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to record {event_type} event: {exc}") from exc
        return int(cursor.lastrowid)

    def record_user_message(self, sender: Sender, messages_type: str, content_length: int | None = None) -> int:
        return self.record(
            "user_message",
            sender,
            message_role="user",
            messages_type=messages_type,
            content_length=content_length,
        )

    def record_command(self, sender: Sender, command: str) -> int:
        return self.record(
            "user_command",
            sender,
            message_role="user",
            messages_type="text",
            message_command=command,
        )

    def record_answer(
        self,
        sender: Sender,
        *,
        content_length: int,
        model: str | None,
        object_name: str | None,
        usage: dict[str, int],
        api_key_source: str | None,
    ) -> int:
        return self.record(
            "assistant_message",
            sender,
            message_role="assistant",
            messages_type="text",
            content_length=content_length,
            usage_model=model,
            usage_object=object_name,
            usage_completion_tokens=usage.get("completion_tokens"),
            usage_prompt_tokens=usage.get("prompt_tokens"),
            usage_total_tokens=usage.get("total_tokens"),
            api_key_source=api_key_source,
        )

    def record_transcription(
        self,
        sender: Sender,
        *,
        content_length: int,
        model: str,
        voice_duration: int | None = None,
        api_key_source: str | None = None,
    ) -> int:
        return self.record(
            "model_transcription",
            sender,
            content_length=content_length,
            usage_model=model,
            message_voice_duration=voice_duration,
            api_key_source=api_key_source,
        )

    def used_tokens(self, user_id: int) -> int:
        row = self._conn.execute(
            "SELECT COALESCE(SUM(usage_total_tokens), 0) AS used FROM events WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        return int(row["used"]) if row else 0

    def latest(self, limit: int = 50) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            "SELECT * FROM events ORDER BY id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [dict(row) for row in rows]

    def summary(self, *, window_days: int | None = None) -> dict[str, Any]:
        where = "WHERE usage_total_tokens IS NOT NULL"
        params: tuple[Any, ...] = ()
        if window_days is not None:
            safe_days = max(1, min(365, int(window_days)))
            where += " AND created_at >= datetime('now', ?)"
            params = (f"-{safe_days} days",)

        totals = self._conn.execute(
            f"""
            SELECT
                COUNT(*) AS total_calls,
                COALESCE(SUM(usage_prompt_tokens), 0) AS total_prompt_tokens,
                COALESCE(SUM(usage_completion_tokens), 0) AS total_completion_tokens,
                COALESCE(SUM(usage_total_tokens), 0) AS total_tokens
            FROM events
            {where}
            """,
            params,
        ).fetchone()
        by_model_rows = self._conn.execute(
            f"""
            SELECT usage_model AS model, COUNT(*) AS calls, COALESCE(SUM(usage_total_tokens), 0) AS total_tokens
            FROM events
            {where}
            GROUP BY usage_model
            ORDER BY total_tokens DESC
            """,
            params,
        ).fetchall()
        by_user_rows = self._conn.execute(
            f"""
            SELECT user_id, user_username AS username, COUNT(*) AS calls,
                   COALESCE(SUM(usage_total_tokens), 0) AS total_tokens
            FROM events
            {where}
            GROUP BY user_id
            ORDER BY total_tokens DESC
            LIMIT 25
            """,
            params,
        ).fetchall()

        return {
            "total_calls": int(totals["total_calls"]) if totals else 0,
            "total_prompt_tokens": int(totals["total_prompt_tokens"]) if totals else 0,
            "total_completion_tokens": int(totals["total_completion_tokens"]) if totals else 0,
            "total_tokens": int(totals["total_tokens"]) if totals else 0,
            "window_days": window_days,
            "by_model": [dict(r) for r in by_model_rows],
            "by_user": [dict(r) for r in by_user_rows],
        }
