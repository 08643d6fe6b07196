"""User records: identity, custom API key and usage type."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from enum import Enum

from assistant.errors import PersistenceError


class UsageType(str, Enum):
    PREMIUM = "premium"
    TRIAL_ACTIVE = "trial_active"
    TRIAL_ENDED = "trial_ended"


@dataclass(frozen=True)
class UserRecord:
    user_id: int
    username: str | None
    default_language_code: str | None
    language_code: str | None
    openai_api_key: str | None
    usage_type: str | None
    created_at: str | None = None


def _to_record(row: sqlite3.Row) -> UserRecord:
    return UserRecord(
        user_id=int(row["user_id"]),
        username=row["username"],
        default_language_code=row["default_language_code"],
        language_code=row["language_code"],
        openai_api_key=row["openai_api_key"],
        usage_type=row["usage_type"],
        created_at=row["created_at"],
    )


class UserStore:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def get(self, user_id: int) -> UserRecord | None:
        row = self._conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
        return None if row is None else _to_record(row)

    def upsert(
        self,
        user_id: int,
        *,
        username: str | None = None,
        language_code: str | None = None,
    ) -> UserRecord:
        """Create the user or refresh identity fields; key and usage type are kept."""
        try:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO users (user_id, username, default_language_code, language_code)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        username = COALESCE(excluded.username, users.username),
                        language_code = COALESCE(excluded.language_code, users.language_code),
                        default_language_code = COALESCE(users.default_language_code, excluded.default_language_code)
                    """,
                    (user_id, username, language_code, language_code),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to upsert user {user_id}: {exc}") from exc
        record = self.get(user_id)
        if record is None:
            raise PersistenceError(f"User {user_id} missing after upsert")
        return record

    def set_usage_type(self, user_id: int, usage_type: UsageType | None) -> bool:
        value = usage_type.value if usage_type is not None else None
        with self._conn:
            cursor = self._conn.execute(
                "UPDATE users SET usage_type = ? WHERE user_id = ?",
                (value, user_id),
            )
        return cursor.rowcount > 0

    def set_api_key(self, user_id: int, api_key: str | None) -> bool:
        with self._conn:
            cursor = self._conn.execute(
                "UPDATE users SET openai_api_key = ? WHERE user_id = ?",
                (api_key, user_id),
            )
        return cursor.rowcount > 0

    def list_by_usage_type(self, usage_type: UsageType) -> list[UserRecord]:
        rows = self._conn.execute(
            """
            SELECT * FROM users
            WHERE usage_type = ?
            ORDER BY created_at DESC, id DESC
            """,
            (usage_type.value,),
        ).fetchall()
        return [_to_record(row) for row in rows]
