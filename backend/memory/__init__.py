from .database import SQLiteMemoryDB, StorageError
from .health_store import HealthMemoryStore
from .insight_detector import DetectionReport, InsightDetector
from .models import ActiveIssue, EventMemory, Insight, IssueHistory, MemoryContext, StepOutcome
from .retrieval import MemoryRetrieval
from .service import MemoryService
from .temporal_lifecycle import IssueLifecycleSweep
from .update import MemoryUpdate, MemoryUpdateReport

__all__ = [
    "ActiveIssue",
    "DetectionReport",
    "EventMemory",
    "HealthMemoryStore",
    "Insight",
    "InsightDetector",
    "IssueHistory",
    "IssueLifecycleSweep",
    "MemoryContext",
    "MemoryRetrieval",
    "MemoryService",
    "MemoryUpdate",
    "MemoryUpdateReport",
    "SQLiteMemoryDB",
    "StepOutcome",
    "StorageError",
]
