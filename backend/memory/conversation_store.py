from __future__ import annotations

import json
import uuid
from typing import Any

from .database import SQLiteMemoryDB, StorageError
from .time_utils import to_iso, utc_now

CONVERSATION_STATUSES = {"pending", "processing", "completed", "failed"}


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _row_to_conversation(row: Any) -> dict[str, Any]:
    data = dict(row)
    data["profile_context"] = json.loads(data.pop("profile_context_json") or "{}")
    raw_response = data.pop("response_json")
    data["response"] = json.loads(raw_response) if raw_response else None
    return data


class ConversationStore:
    def __init__(self, db: SQLiteMemoryDB) -> None:
        self._db = db

    def create(
        self,
        *,
        subject_id: str,
        transcript: str | None,
        input_type: str = "text",
        profile_context: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        now = to_iso(utc_now())
        conversation_id = uuid.uuid4().hex
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO conversations (
                  id, subject_id, transcript, input_type, status, profile_context_json, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, 'pending', ?, ?, ?)
                """,
                (
                    conversation_id,
                    subject_id,
                    transcript,
                    input_type,
                    _json_dumps(profile_context or {}),
                    now,
                    now,
                ),
            )
        conversation = self.get(conversation_id)
        if conversation is None:
            raise StorageError(f"Conversation {conversation_id} was not readable after insert")
        return conversation

    def get(self, conversation_id: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        return _row_to_conversation(row) if row else None

    def update_status(self, conversation_id: str, status: str, error_message: str | None = None) -> None:
        if status not in CONVERSATION_STATUSES:
            raise ValueError(f"Unsupported conversation status: {status}")
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE conversations
                SET status = ?, error_message = COALESCE(?, error_message), updated_at = ?
                WHERE id = ?
                """,
                (status, error_message, to_iso(utc_now()), conversation_id),
            )

    def store_response(
        self,
        conversation_id: str,
        *,
        response: dict[str, Any],
        model: str,
        prompt_version: str,
        status: str | None = None,
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE conversations
                SET response_json = ?, model = ?, prompt_version = ?, status = COALESCE(?, status), updated_at = ?
                WHERE id = ?
                """,
                (_json_dumps(response), model, prompt_version, status, to_iso(utc_now()), conversation_id),
            )

    def list_for_subject(self, subject_id: str, limit: int = 20) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM conversations
                WHERE subject_id = ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (subject_id, max(1, limit)),
            ).fetchall()
        return [_row_to_conversation(row) for row in rows]
