from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from .health_store import HealthMemoryStore
from .issue_matching import find_similar_issue
from .models import OPEN_ISSUE_STATUSES, ActiveIssue, IssueUpdateInstruction, MemoryContext, StepOutcome
from .temporal_lifecycle import IssueLifecycleSweep, SweepResult
from .time_utils import to_iso, utc_now

logger = logging.getLogger(__name__)


class IssueNotFound(LookupError):
    pass


@dataclass
class MemoryUpdateReport:
    subject_id: str
    outcomes: list[StepOutcome] = field(default_factory=list)
    event_id: str | None = None
    created_issue_ids: list[str] = field(default_factory=list)
    updated_issue_ids: list[str] = field(default_factory=list)
    sweep: SweepResult | None = None

    @property
    def ok(self) -> bool:
        return all(outcome.ok for outcome in self.outcomes)

    @property
    def diagnostics(self) -> list[StepOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]

    def as_dict(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "ok": self.ok,
            "event_id": self.event_id,
            "created_issue_ids": self.created_issue_ids,
            "updated_issue_ids": self.updated_issue_ids,
            "diagnostics": [
                {"name": outcome.name, "error": outcome.error} for outcome in self.diagnostics
            ],
        }


class MemoryUpdate:
    """Persists a finished conversation turn into event, issue and history state.

    The three steps (event logging, issue reconciliation, lifecycle sweep) run
    in order and never raise; each reports a ``StepOutcome`` instead.
    """

    def __init__(self, store: HealthMemoryStore, sweep: IssueLifecycleSweep | None = None) -> None:
        self._store = store
        self._sweep = sweep or IssueLifecycleSweep(store)

    def update(
        self,
        subject_id: str,
        user_text: str,
        model_response: Mapping[str, Any],
        prior_context: MemoryContext | None = None,
        *,
        now: datetime | None = None,
    ) -> MemoryUpdateReport:
        report = MemoryUpdateReport(subject_id=subject_id)
        context = prior_context or MemoryContext()
        current = now or utc_now()
        stamp = to_iso(current)

        try:
            event = self._store.insert_event(
                subject_id=subject_id,
                event_type="conversation",
                description=user_text,
                metadata={
                    "reflection": model_response.get("reflection"),
                    "interpretation": model_response.get("interpretation"),
                    "followUp": model_response.get("followUp"),
                    "timestamp": stamp,
                },
                timestamp=stamp,
            )
            report.event_id = event.id
            report.outcomes.append(StepOutcome.success("event_logging", event.id))
        except Exception as exc:
            report.outcomes.append(StepOutcome.failure("event_logging", exc))

        raw_updates = model_response.get("suggestedIssueUpdates") or []
        for index, payload in enumerate(raw_updates if isinstance(raw_updates, list) else []):
            if not isinstance(payload, Mapping):
                report.outcomes.append(StepOutcome.failure(f"issue_update[{index}]", "Malformed issue update."))
                continue
            instruction = IssueUpdateInstruction.from_payload(dict(payload))
            step_name = f"issue_update[{index}]:{instruction.action}"
            if instruction.action == "none":
                continue
            try:
                issue, created = self._apply_instruction(subject_id, instruction, context, stamp)
            except Exception as exc:
                report.outcomes.append(StepOutcome.failure(step_name, exc))
                continue
            (report.created_issue_ids if created else report.updated_issue_ids).append(issue.id)
            report.outcomes.append(StepOutcome.success(step_name, issue.id))

        try:
            report.sweep = self._sweep.apply(subject_id, now=current)
            report.outcomes.append(
                StepOutcome.success("lifecycle_sweep", f"{report.sweep.transition_count} transitions")
            )
        except Exception as exc:
            report.outcomes.append(StepOutcome.failure("lifecycle_sweep", exc))

        logger.info(
            "Memory update for subject %s: %d created, %d updated, %d diagnostics",
            subject_id,
            len(report.created_issue_ids),
            len(report.updated_issue_ids),
            len(report.diagnostics),
        )
        return report

    def _apply_instruction(
        self,
        subject_id: str,
        instruction: IssueUpdateInstruction,
        context: MemoryContext,
        stamp: str,
    ) -> tuple[ActiveIssue, bool]:
        if instruction.action == "create":
            existing = self.find_similar_issue(subject_id, instruction.label, context)
            if existing:
                logger.info("Issue %r matches existing %s; updating instead", instruction.label, existing.id)
                return self._update_existing(existing, instruction, stamp), False
            return self._create(subject_id, instruction, stamp), True

        if not instruction.issue_id:
            raise ValueError(f"No issue id supplied for {instruction.action}.")
        issue = self._store.get_issue(instruction.issue_id)
        if not issue or issue.subject_id != subject_id:
            raise IssueNotFound(f"Issue {instruction.issue_id} not found for subject {subject_id}.")
        if instruction.action == "resolve":
            return self._resolve(issue, instruction, stamp), False
        return self._update_existing(issue, instruction, stamp), False

    def find_similar_issue(self, subject_id: str, label: str, context: MemoryContext) -> ActiveIssue | None:
        similar = find_similar_issue(label, context.active_issues)
        if similar:
            return similar
        return find_similar_issue(label, self._store.list_issues(subject_id, statuses=OPEN_ISSUE_STATUSES))

    def _create(self, subject_id: str, instruction: IssueUpdateInstruction, stamp: str) -> ActiveIssue:
        if not instruction.label:
            raise ValueError("Cannot create an issue without a label.")
        status = instruction.status or "active"
        severity = instruction.severity or "mild"
        issue = self._store.insert_issue(
            subject_id=subject_id,
            label=instruction.label,
            status=status,
            severity=severity,
            notes=instruction.reason,
            reported_at=stamp,
        )
        self._store.insert_history(
            issue_id=issue.id,
            old_status=None,
            new_status=status,
            old_severity=None,
            new_severity=severity,
            reason="Issue created",
            changed_at=stamp,
        )
        logger.info("Created issue %s (%s) for subject %s", issue.id, issue.label, subject_id)
        return issue

    def _update_existing(self, issue: ActiveIssue, instruction: IssueUpdateInstruction, stamp: str) -> ActiveIssue:
        status = instruction.status or issue.status
        severity = instruction.severity or issue.severity
        if status != issue.status or severity != issue.severity:
            self._store.insert_history(
                issue_id=issue.id,
                old_status=issue.status,
                new_status=status,
                old_severity=issue.severity,
                new_severity=severity,
                reason=instruction.reason or "Status updated",
                changed_at=stamp,
            )
        updated = self._store.update_issue(
            issue.id,
            status=status,
            severity=severity,
            last_mentioned_at=stamp,
            notes=instruction.reason or issue.notes,
        )
        return updated or issue

    def _resolve(self, issue: ActiveIssue, instruction: IssueUpdateInstruction, stamp: str) -> ActiveIssue:
        reason = instruction.reason or "Issue resolved"
        if issue.status != "resolved":
            self._store.insert_history(
                issue_id=issue.id,
                old_status=issue.status,
                new_status="resolved",
                old_severity=issue.severity,
                new_severity=issue.severity,
                reason=reason,
                changed_at=stamp,
            )
        updated = self._store.update_issue(
            issue.id,
            status="resolved",
            last_mentioned_at=stamp,
            notes=reason,
        )
        return updated or issue
