from __future__ import annotations

import re
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class StorageError(Exception):
    """Persistence access failed. Callers may retry."""

    retryable = True


def _regexp(pattern: str, value: str | None) -> bool:
    if value is None:
        return False
    try:
        return re.search(pattern, value, re.IGNORECASE) is not None
    except re.error:
        return False


class SQLiteMemoryDB:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.create_function("REGEXP", 2, _regexp, deterministic=True)
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StorageError(f"Could not open memory database: {exc}") from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StorageError(str(exc)) from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS active_issues (
                  id TEXT PRIMARY KEY,
                  subject_id TEXT NOT NULL,
                  label TEXT NOT NULL,
                  status TEXT NOT NULL DEFAULT 'active',
                  severity TEXT NOT NULL DEFAULT 'mild',
                  first_reported_at TEXT NOT NULL,
                  last_mentioned_at TEXT NOT NULL,
                  notes TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS event_memory (
                  id TEXT PRIMARY KEY,
                  subject_id TEXT NOT NULL,
                  event_type TEXT NOT NULL,
                  description TEXT NOT NULL,
                  metadata_json TEXT NOT NULL,
                  timestamp TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS insight_memory (
                  id TEXT PRIMARY KEY,
                  subject_id TEXT NOT NULL,
                  insight TEXT NOT NULL,
                  confidence REAL NOT NULL,
                  related_issue_id TEXT REFERENCES active_issues(id) ON DELETE SET NULL,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS issue_history (
                  id TEXT PRIMARY KEY,
                  issue_id TEXT NOT NULL REFERENCES active_issues(id) ON DELETE CASCADE,
                  old_status TEXT,
                  new_status TEXT NOT NULL,
                  old_severity TEXT,
                  new_severity TEXT NOT NULL,
                  reason TEXT NOT NULL,
                  changed_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS conversations (
                  id TEXT PRIMARY KEY,
                  subject_id TEXT NOT NULL,
                  transcript TEXT,
                  input_type TEXT NOT NULL DEFAULT 'text',
                  status TEXT NOT NULL DEFAULT 'pending',
                  profile_context_json TEXT NOT NULL DEFAULT '{}',
                  response_json TEXT,
                  model TEXT,
                  prompt_version TEXT,
                  error_message TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_active_issues_subject_status
                  ON active_issues(subject_id, status);
                CREATE INDEX IF NOT EXISTS idx_event_memory_subject_time
                  ON event_memory(subject_id, timestamp DESC);
                CREATE INDEX IF NOT EXISTS idx_event_memory_subject_type
                  ON event_memory(subject_id, event_type, timestamp DESC);
                CREATE INDEX IF NOT EXISTS idx_insight_memory_subject_confidence
                  ON insight_memory(subject_id, confidence DESC);
                CREATE INDEX IF NOT EXISTS idx_issue_history_issue
                  ON issue_history(issue_id, changed_at DESC);
                CREATE INDEX IF NOT EXISTS idx_conversations_subject
                  ON conversations(subject_id, created_at DESC);
                """
            )
