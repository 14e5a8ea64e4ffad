from __future__ import annotations

import json
import uuid
from typing import Any, Iterable

from .database import SQLiteMemoryDB
from .models import EVENT_TYPES, SEVERITY_RANK, ActiveIssue, EventMemory, Insight, IssueHistory
from .time_utils import to_iso, utc_now


INSIGHT_DEDUP_PREFIX_CHARS = 20

_ISSUE_MUTABLE_FIELDS = {"label", "status", "severity", "last_mentioned_at", "notes"}

_SEVERITY_CASE = "CASE severity " + " ".join(
    f"WHEN '{severity}' THEN {rank}" for severity, rank in SEVERITY_RANK.items()
) + " ELSE 0 END"

_ISSUE_ORDERS = {
    "priority": f"{_SEVERITY_CASE} DESC, last_mentioned_at DESC",
    "recent": "last_mentioned_at DESC",
}


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


class HealthMemoryStore:
    """Typed access to issues, events, insights and issue history.

    Every method raises ``StorageError`` when the database cannot be read or
    written; none of them catch it.
    """

    def __init__(self, db: SQLiteMemoryDB) -> None:
        self._db = db

    # Active issues

    def insert_issue(
        self,
        *,
        subject_id: str,
        label: str,
        status: str = "active",
        severity: str = "mild",
        notes: str | None = None,
        reported_at: str | None = None,
    ) -> ActiveIssue:
        now = to_iso(utc_now())
        reported = reported_at or now
        issue = ActiveIssue(
            id=uuid.uuid4().hex,
            subject_id=subject_id,
            label=label.strip(),
            status=status,
            severity=severity,
            first_reported_at=reported,
            last_mentioned_at=reported,
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO active_issues (
                  id, subject_id, label, status, severity, first_reported_at,
                  last_mentioned_at, notes, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    issue.id,
                    issue.subject_id,
                    issue.label,
                    issue.status,
                    issue.severity,
                    issue.first_reported_at,
                    issue.last_mentioned_at,
                    issue.notes,
                    issue.created_at,
                    issue.updated_at,
                ),
            )
        return issue

    def get_issue(self, issue_id: str) -> ActiveIssue | None:
        with self._db.connection() as conn:
            row = conn.execute("SELECT * FROM active_issues WHERE id = ?", (issue_id,)).fetchone()
        return ActiveIssue.from_row(row) if row else None

    def update_issue(self, issue_id: str, **fields: Any) -> ActiveIssue | None:
        unknown = set(fields) - _ISSUE_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported issue fields: {', '.join(sorted(unknown))}")
        if not fields:
            return self.get_issue(issue_id)
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [*fields.values(), to_iso(utc_now()), issue_id]
        with self._db.connection() as conn:
            conn.execute(
                f"UPDATE active_issues SET {assignments}, updated_at = ? WHERE id = ?",
                tuple(params),
            )
            row = conn.execute("SELECT * FROM active_issues WHERE id = ?", (issue_id,)).fetchone()
        return ActiveIssue.from_row(row) if row else None

    def list_issues(
        self,
        subject_id: str,
        *,
        statuses: Iterable[str] | None = None,
        order: str = "priority",
        limit: int | None = None,
    ) -> list[ActiveIssue]:
        if order not in _ISSUE_ORDERS:
            raise ValueError(f"Unsupported issue order: {order}")
        sql = "SELECT * FROM active_issues WHERE subject_id = ?"
        params: list[Any] = [subject_id]
        if statuses is not None:
            status_list = sorted(set(statuses))
            if not status_list:
                return []
            sql += f" AND status IN ({_placeholders(status_list)})"
            params.extend(status_list)
        sql += f" ORDER BY {_ISSUE_ORDERS[order]}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(max(1, limit))
        with self._db.connection() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [ActiveIssue.from_row(row) for row in rows]

    # Event memory

    def insert_event(
        self,
        *,
        subject_id: str,
        event_type: str,
        description: str,
        metadata: dict[str, Any] | None = None,
        timestamp: str | None = None,
    ) -> EventMemory:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unsupported event type: {event_type}")
        now = to_iso(utc_now())
        event = EventMemory(
            id=uuid.uuid4().hex,
            subject_id=subject_id,
            event_type=event_type,
            description=description,
            metadata=dict(metadata or {}),
            timestamp=timestamp or now,
            created_at=now,
        )
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO event_memory (id, subject_id, event_type, description, metadata_json, timestamp, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.subject_id,
                    event.event_type,
                    event.description,
                    _json_dumps(event.metadata),
                    event.timestamp,
                    event.created_at,
                ),
            )
        return event

    def list_events(
        self,
        subject_id: str,
        *,
        event_type: str | None = None,
        pattern: str | None = None,
        since: str | None = None,
        limit: int | None = None,
    ) -> list[EventMemory]:
        sql = "SELECT * FROM event_memory WHERE subject_id = ?"
        params: list[Any] = [subject_id]
        if event_type:
            sql += " AND event_type = ?"
            params.append(event_type)
        if pattern:
            sql += " AND description REGEXP ?"
            params.append(pattern)
        if since:
            sql += " AND timestamp >= ?"
            params.append(since)
        sql += " ORDER BY timestamp DESC, created_at DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(max(1, limit))
        with self._db.connection() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [EventMemory.from_row(row) for row in rows]

    # Insights

    def insert_insight(
        self,
        *,
        subject_id: str,
        insight: str,
        confidence: float,
        related_issue_id: str | None = None,
    ) -> Insight | None:
        """Insert unless an existing insight already contains this one's opening text."""
        text = insight.strip()
        prefix = text[:INSIGHT_DEDUP_PREFIX_CHARS]
        now = to_iso(utc_now())
        record = Insight(
            id=uuid.uuid4().hex,
            subject_id=subject_id,
            insight=text,
            confidence=max(0.0, min(1.0, float(confidence))),
            related_issue_id=related_issue_id,
            created_at=now,
            updated_at=now,
        )
        with self._db.connection() as conn:
            existing = conn.execute(
                """
                SELECT id
                FROM insight_memory
                WHERE subject_id = ? AND instr(lower(insight), lower(?)) > 0
                LIMIT 1
                """,
                (subject_id, prefix),
            ).fetchone()
            if existing:
                return None
            conn.execute(
                """
                INSERT INTO insight_memory (id, subject_id, insight, confidence, related_issue_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.subject_id,
                    record.insight,
                    record.confidence,
                    record.related_issue_id,
                    record.created_at,
                    record.updated_at,
                ),
            )
        return record

    def list_insights(self, subject_id: str, *, limit: int | None = None) -> list[Insight]:
        sql = "SELECT * FROM insight_memory WHERE subject_id = ? ORDER BY confidence DESC, created_at DESC"
        params: list[Any] = [subject_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(max(1, limit))
        with self._db.connection() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [Insight.from_row(row) for row in rows]

    # Issue history

    def insert_history(
        self,
        *,
        issue_id: str,
        old_status: str | None,
        new_status: str,
        old_severity: str | None,
        new_severity: str,
        reason: str,
        changed_at: str | None = None,
    ) -> IssueHistory:
        entry = IssueHistory(
            id=uuid.uuid4().hex,
            issue_id=issue_id,
            old_status=old_status,
            new_status=new_status,
            old_severity=old_severity,
            new_severity=new_severity,
            reason=reason,
            changed_at=changed_at or to_iso(utc_now()),
        )
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO issue_history (
                  id, issue_id, old_status, new_status, old_severity, new_severity, reason, changed_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.issue_id,
                    entry.old_status,
                    entry.new_status,
                    entry.old_severity,
                    entry.new_severity,
                    entry.reason,
                    entry.changed_at,
                ),
            )
        return entry

    def list_history(self, issue_id: str) -> list[IssueHistory]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM issue_history
                WHERE issue_id = ?
                ORDER BY changed_at DESC, rowid DESC
                """,
                (issue_id,),
            ).fetchall()
        return [IssueHistory.from_row(row) for row in rows]
