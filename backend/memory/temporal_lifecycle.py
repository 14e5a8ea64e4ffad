from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from .health_store import HealthMemoryStore
from .models import OPEN_ISSUE_STATUSES
from .time_utils import parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

STALE_RESOLVE_REASON = "no mention in 30 days"
RECURRENCE_REASON = "symptom recurrence"


@dataclass
class SweepResult:
    resolved_ids: list[str] = field(default_factory=list)
    reactivated_ids: list[str] = field(default_factory=list)

    @property
    def transition_count(self) -> int:
        return len(self.resolved_ids) + len(self.reactivated_ids)


class IssueLifecycleSweep:
    """Time-based status rules applied to every open issue of a subject."""

    AUTO_RESOLVE_DAYS = 30
    RECURRENCE_DAYS = 2

    def __init__(self, store: HealthMemoryStore) -> None:
        self._store = store

    def apply(self, subject_id: str, *, now: datetime | None = None) -> SweepResult:
        current = now or utc_now()
        stamp = to_iso(current)
        result = SweepResult()

        for issue in self._store.list_issues(subject_id, statuses=OPEN_ISSUE_STATUSES, order="recent"):
            last_mentioned = parse_iso(issue.last_mentioned_at)
            if not last_mentioned:
                continue
            elapsed = current - last_mentioned

            if issue.status == "active" and elapsed > timedelta(days=self.AUTO_RESOLVE_DAYS):
                self._transition(issue.id, issue.status, "resolved", issue.severity, STALE_RESOLVE_REASON, stamp)
                result.resolved_ids.append(issue.id)
                logger.info("Auto-resolved issue %s (%s)", issue.id, issue.label)
                continue

            if issue.status == "improving" and elapsed < timedelta(days=self.RECURRENCE_DAYS):
                self._transition(issue.id, issue.status, "active", issue.severity, RECURRENCE_REASON, stamp)
                result.reactivated_ids.append(issue.id)
                logger.info("Reactivated issue %s (%s)", issue.id, issue.label)

        return result

    def _transition(
        self, issue_id: str, old_status: str, new_status: str, severity: str, reason: str, changed_at: str
    ) -> None:
        self._store.insert_history(
            issue_id=issue_id,
            old_status=old_status,
            new_status=new_status,
            old_severity=severity,
            new_severity=severity,
            reason=reason,
            changed_at=changed_at,
        )
        self._store.update_issue(issue_id, status=new_status)
