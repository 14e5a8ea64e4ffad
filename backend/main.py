from __future__ import annotations

import os
import re
from typing import Any

from fastapi import BackgroundTasks, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from jeevan_agent_core import (
    ConversationOrchestrator,
    ConversationWorker,
    OpenAICompatibleProvider,
    load_settings,
)
from jeevan_agent_core.logging_config import get_logger, setup_logging
from memory import MemoryService, SQLiteMemoryDB
from memory.time_utils import parse_iso, to_iso

logger = get_logger("jeevan.api")


class ConversationRequest(BaseModel):
    subject_id: str
    transcript: str
    profile_context: dict[str, Any] = Field(default_factory=dict)


class VitalPayload(BaseModel):
    type: str
    value: float
    timestamp: str | None = None
    unit: str | None = None


class JeevanApp:
    def __init__(self) -> None:
        self.settings = load_settings()
        setup_logging(self.settings)
        self.memory = MemoryService(SQLiteMemoryDB(self.settings.db_path))
        self.provider = OpenAICompatibleProvider(self.settings.llm)
        self.orchestrator = ConversationOrchestrator(self.memory, self.provider)
        self.worker = ConversationWorker(
            self.memory,
            self.orchestrator,
            prompt_version=self.settings.prompt_version,
            model_name=self.settings.llm.model,
            inline_detection=False,
        )
        if not self.settings.llm.available:
            logger.warning("OPENAI_API_KEY is not set; conversations will receive the fallback response.")


container = JeevanApp()
app = FastAPI(title="Jeevan Backend")

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in allowed_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_SUBJECT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{0,63}$")


def _validated_subject_id(subject_id: str) -> str:
    candidate = subject_id.strip()
    if not _SUBJECT_ID_RE.fullmatch(candidate):
        raise HTTPException(status_code=400, detail="Invalid subject id")
    return candidate


@app.get("/health")
def health():
    return {"ok": True, "model_configured": container.settings.llm.available}


@app.post("/conversations")
def create_conversation(payload: ConversationRequest, background_tasks: BackgroundTasks):
    subject_id = _validated_subject_id(payload.subject_id)
    if not payload.transcript.strip():
        raise HTTPException(status_code=400, detail="Transcript is empty.")
    conversation = container.memory.conversations.create(
        subject_id=subject_id,
        transcript=payload.transcript,
        profile_context=payload.profile_context,
    )
    processing: dict[str, Any] | None = None
    try:
        processing = container.worker.process(conversation["id"])
    except Exception as exc:
        logger.warning("Conversation %s fell back after error: %s", conversation["id"], exc)
    else:
        background_tasks.add_task(container.worker.detect_patterns, subject_id)

    stored = container.memory.conversations.get(conversation["id"])
    return {"conversation": stored, "processing": processing}


@app.get("/conversations/{conversation_id}")
def get_conversation(conversation_id: str):
    conversation = container.memory.conversations.get(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


@app.get("/subjects/{subject_id}/conversations")
def list_conversations(subject_id: str, limit: int = 20):
    subject_id = _validated_subject_id(subject_id)
    return {"items": container.memory.conversations.list_for_subject(subject_id, limit)}


@app.post("/subjects/{subject_id}/vitals")
def post_vital(subject_id: str, payload: VitalPayload):
    subject_id = _validated_subject_id(subject_id)
    vital_type = payload.type.strip().lower()
    if not vital_type:
        raise HTTPException(status_code=400, detail="Vital type is required.")
    timestamp = None
    if payload.timestamp:
        parsed = parse_iso(payload.timestamp)
        if parsed is None:
            raise HTTPException(status_code=400, detail="Invalid timestamp.")
        timestamp = to_iso(parsed)
    event = container.memory.record_vital(
        subject_id=subject_id,
        vital_type=vital_type,
        value=payload.value,
        timestamp=timestamp,
        unit=payload.unit,
    )
    return event.as_dict()


@app.get("/subjects/{subject_id}/issues")
def list_issues(subject_id: str):
    subject_id = _validated_subject_id(subject_id)
    return {"items": [issue.as_dict() for issue in container.memory.retrieval.all_open_issues(subject_id)]}


@app.get("/subjects/{subject_id}/insights")
def list_insights(subject_id: str):
    subject_id = _validated_subject_id(subject_id)
    return {"items": [insight.as_dict() for insight in container.memory.retrieval.all_insights(subject_id)]}


@app.get("/subjects/{subject_id}/events")
def list_events(subject_id: str, limit: int = 20):
    subject_id = _validated_subject_id(subject_id)
    events = container.memory.store.list_events(subject_id, limit=max(1, min(limit, 200)))
    return {"items": [event.as_dict() for event in events]}


@app.post("/subjects/{subject_id}/insights/detect")
def detect_insights(subject_id: str):
    subject_id = _validated_subject_id(subject_id)
    return container.memory.detect_insights(subject_id).as_dict()


@app.get("/issues/{issue_id}/history")
def issue_history(issue_id: str):
    issue = container.memory.store.get_issue(issue_id)
    if issue is None:
        raise HTTPException(status_code=404, detail="Issue not found")
    return {
        "issue": issue.as_dict(),
        "items": [entry.as_dict() for entry in container.memory.retrieval.issue_history(issue_id)],
    }
