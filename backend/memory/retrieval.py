from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, TypeVar

from .health_store import HealthMemoryStore
from .models import (
    CONTEXT_ISSUE_STATUSES,
    OPEN_ISSUE_STATUSES,
    ActiveIssue,
    EventMemory,
    Insight,
    IssueHistory,
    MemoryContext,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MemoryRetrieval:
    """Builds the context bundle handed to the model before each response."""

    ACTIVE_ISSUE_LIMIT = 2
    RECENT_EVENT_LIMIT = 3
    INSIGHT_LIMIT = 2

    def __init__(self, store: HealthMemoryStore) -> None:
        self._store = store

    def retrieve(self, subject_id: str) -> MemoryContext:
        with ThreadPoolExecutor(max_workers=3, thread_name_prefix="memory-retrieval") as pool:
            issues = pool.submit(self.active_issues, subject_id)
            events = pool.submit(self.recent_events, subject_id)
            insights = pool.submit(self.top_insights, subject_id)
            context = MemoryContext(
                active_issues=self._degrade("active_issues", subject_id, issues.result),
                recent_events=self._degrade("recent_events", subject_id, events.result),
                insights=self._degrade("insights", subject_id, insights.result),
            )
        logger.info(
            "Retrieved memory for subject %s: %d issues, %d events, %d insights",
            subject_id,
            len(context.active_issues),
            len(context.recent_events),
            len(context.insights),
        )
        return context

    @staticmethod
    def _degrade(slice_name: str, subject_id: str, fetch: Callable[[], list[T]]) -> list[T]:
        try:
            return fetch()
        except Exception as exc:
            logger.warning("Memory slice %s unavailable for subject %s: %s", slice_name, subject_id, exc)
            return []

    def active_issues(self, subject_id: str, limit: int | None = None) -> list[ActiveIssue]:
        return self._store.list_issues(
            subject_id,
            statuses=CONTEXT_ISSUE_STATUSES,
            order="priority",
            limit=limit or self.ACTIVE_ISSUE_LIMIT,
        )

    def recent_events(self, subject_id: str, limit: int | None = None) -> list[EventMemory]:
        return self._store.list_events(subject_id, limit=limit or self.RECENT_EVENT_LIMIT)

    def top_insights(self, subject_id: str, limit: int | None = None) -> list[Insight]:
        return self._store.list_insights(subject_id, limit=limit or self.INSIGHT_LIMIT)

    def all_open_issues(self, subject_id: str) -> list[ActiveIssue]:
        return self._store.list_issues(
            subject_id,
            statuses=OPEN_ISSUE_STATUSES,
            order="recent",
        )

    def all_insights(self, subject_id: str) -> list[Insight]:
        return self._store.list_insights(subject_id)

    def issue_history(self, issue_id: str) -> list[IssueHistory]:
        return self._store.list_history(issue_id)
