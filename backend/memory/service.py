from __future__ import annotations

from datetime import datetime
from typing import Any

from .conversation_store import ConversationStore
from .database import SQLiteMemoryDB
from .health_store import HealthMemoryStore
from .insight_detector import DetectionReport, InsightDetector
from .models import EventMemory
from .retrieval import MemoryRetrieval
from .temporal_lifecycle import IssueLifecycleSweep, SweepResult
from .update import MemoryUpdate


class MemoryService:
    """Wires every memory component to one shared store."""

    def __init__(self, db: SQLiteMemoryDB) -> None:
        self.db = db
        self.store = HealthMemoryStore(db)
        self.conversations = ConversationStore(db)
        self.retrieval = MemoryRetrieval(self.store)
        self.sweep = IssueLifecycleSweep(self.store)
        self.updater = MemoryUpdate(self.store, self.sweep)
        self.detector = InsightDetector(self.store)

    def apply_temporal(self, subject_id: str, *, now: datetime | None = None) -> SweepResult:
        return self.sweep.apply(subject_id, now=now)

    def detect_insights(self, subject_id: str, *, now: datetime | None = None) -> DetectionReport:
        return self.detector.detect(subject_id, now=now)

    def record_vital(
        self,
        *,
        subject_id: str,
        vital_type: str,
        value: float,
        timestamp: str | None = None,
        unit: str | None = None,
    ) -> EventMemory:
        metadata: dict[str, Any] = {"type": vital_type, "value": value}
        if unit:
            metadata["unit"] = unit
        description = f"{vital_type.replace('_', ' ').capitalize()} reading: {value:g}" + (f" {unit}" if unit else "")
        return self.store.insert_event(
            subject_id=subject_id,
            event_type="vitals",
            description=description,
            metadata=metadata,
            timestamp=timestamp,
        )
