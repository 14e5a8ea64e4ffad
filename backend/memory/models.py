from __future__ import annotations

import json
import sqlite3
from dataclasses import asdict, dataclass, field
from typing import Any


ISSUE_STATUSES = {"active", "improving", "monitoring", "resolved"}
OPEN_ISSUE_STATUSES = {"active", "improving", "monitoring"}
CONTEXT_ISSUE_STATUSES = {"active", "monitoring"}
ISSUE_SEVERITIES = {"mild", "moderate", "severe"}
SEVERITY_RANK = {"severe": 3, "moderate": 2, "mild": 1}

EVENT_TYPES = {"conversation", "vitals", "report_finding", "device_reading"}


@dataclass
class ActiveIssue:
    id: str
    subject_id: str
    label: str
    status: str
    severity: str
    first_reported_at: str
    last_mentioned_at: str
    notes: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ActiveIssue":
        return cls(**dict(row))

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EventMemory:
    id: str
    subject_id: str
    event_type: str
    description: str
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: str = ""
    created_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "EventMemory":
        data = dict(row)
        raw_metadata = data.pop("metadata_json", None)
        metadata = json.loads(raw_metadata) if raw_metadata else {}
        return cls(metadata=metadata if isinstance(metadata, dict) else {}, **data)

    def vital_value(self) -> float | None:
        value = self.metadata.get("value")
        if isinstance(value, bool):
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Insight:
    id: str
    subject_id: str
    insight: str
    confidence: float
    related_issue_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Insight":
        return cls(**dict(row))

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class IssueHistory:
    id: str
    issue_id: str
    old_status: str | None
    new_status: str
    old_severity: str | None
    new_severity: str
    reason: str
    changed_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "IssueHistory":
        return cls(**dict(row))

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MemoryContext:
    active_issues: list[ActiveIssue] = field(default_factory=list)
    recent_events: list[EventMemory] = field(default_factory=list)
    insights: list[Insight] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "active_issues": [issue.as_dict() for issue in self.active_issues],
            "recent_events": [event.as_dict() for event in self.recent_events],
            "insights": [insight.as_dict() for insight in self.insights],
        }


@dataclass
class StepOutcome:
    """Result of one best-effort step; the caller decides how to log it."""

    name: str
    ok: bool
    detail: str = ""
    error: str | None = None

    @classmethod
    def success(cls, name: str, detail: str = "") -> "StepOutcome":
        return cls(name=name, ok=True, detail=detail)

    @classmethod
    def failure(cls, name: str, exc: BaseException | str) -> "StepOutcome":
        message = exc if isinstance(exc, str) else f"{type(exc).__name__}: {exc}"
        return cls(name=name, ok=False, error=message)


ISSUE_ACTIONS = {"create", "update", "resolve", "none"}


def _clean_choice(value: Any, allowed: set[str]) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip().lower()
    return cleaned if cleaned in allowed else None


@dataclass
class IssueUpdateInstruction:
    action: str
    label: str = ""
    issue_id: str | None = None
    status: str | None = None
    severity: str | None = None
    reason: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "IssueUpdateInstruction":
        issue_id = payload.get("issueId", payload.get("issue_id"))
        reason = payload.get("reason")
        return cls(
            action=_clean_choice(payload.get("action"), ISSUE_ACTIONS) or "none",
            label=str(payload.get("label") or "").strip(),
            issue_id=str(issue_id).strip() if issue_id else None,
            status=_clean_choice(payload.get("status"), ISSUE_STATUSES),
            severity=_clean_choice(payload.get("severity"), ISSUE_SEVERITIES),
            reason=str(reason).strip() if reason else None,
        )
