from __future__ import annotations

import logging
import time
from typing import Any

from memory.service import MemoryService

from .orchestrator import ConversationOrchestrator
from .prompts import fallback_response
from .safety import SafetyValidator

logger = logging.getLogger(__name__)

FALLBACK_MODEL = "fallback"


class ConversationNotFound(LookupError):
    pass


class ConversationWorker:
    """Queue handler: one ``process`` call per conversation id."""

    def __init__(
        self,
        memory: MemoryService,
        orchestrator: ConversationOrchestrator,
        *,
        prompt_version: str,
        model_name: str,
        inline_detection: bool = True,
    ) -> None:
        self.memory = memory
        self.orchestrator = orchestrator
        self.prompt_version = prompt_version
        self.model_name = model_name
        self.inline_detection = inline_detection

    def process(self, conversation_id: str) -> dict[str, Any]:
        started = time.monotonic()
        conversations = self.memory.conversations
        try:
            conversation = conversations.get(conversation_id)
            if conversation is None:
                raise ConversationNotFound(f"Conversation not found: {conversation_id}")
            transcript = (conversation.get("transcript") or "").strip()
            if not transcript:
                raise ValueError(f"Conversation {conversation_id} has no transcript")

            conversations.update_status(conversation_id, "processing")
            logger.info("Processing conversation %s for subject %s", conversation_id, conversation["subject_id"])

            result = self.orchestrator.respond(
                conversation["subject_id"],
                transcript,
                conversation.get("profile_context") or {},
                conversation_ref=conversation_id,
            )
            conversations.store_response(
                conversation_id,
                response=result.response.public_payload(),
                model=self.model_name,
                prompt_version=self.prompt_version,
                status="completed",
            )
        except ConversationNotFound:
            logger.error("Conversation %s does not exist", conversation_id)
            raise
        except Exception as exc:
            logger.error("Conversation %s failed: %s", conversation_id, exc)
            self._store_fallback(conversation_id, str(exc))
            raise

        insights_detected = self.detect_patterns(conversation["subject_id"]) if self.inline_detection else None

        elapsed = time.monotonic() - started
        score = SafetyValidator.safety_score(result.safety)
        logger.info(
            "Conversation %s completed in %.2fs (safety score %d)", conversation_id, elapsed, score
        )
        return {
            "conversation_id": conversation_id,
            "status": "completed",
            "processing_seconds": round(elapsed, 3),
            "safety_score": score,
            "should_escalate": result.safety.should_escalate,
            "memory_update_ok": result.update_report.ok if result.update_report else False,
            "insights_detected": insights_detected,
        }

    def detect_patterns(self, subject_id: str) -> int | None:
        """Run the insight rules after a completed turn; returns the number of new insights."""
        try:
            report = self.memory.detect_insights(subject_id)
        except Exception:
            logger.exception("Pattern detection failed for subject %s", subject_id)
            return None
        for outcome in report.diagnostics:
            logger.warning("Insight rule %s failed for subject %s: %s", outcome.name, subject_id, outcome.error)
        return len(report.insights)

    def _store_fallback(self, conversation_id: str, error_message: str) -> None:
        conversations = self.memory.conversations
        try:
            conversations.update_status(conversation_id, "failed", error_message=error_message)
            conversations.store_response(
                conversation_id,
                response=fallback_response(),
                model=FALLBACK_MODEL,
                prompt_version=self.prompt_version,
            )
        except Exception:
            logger.exception("Failed to save fallback response for conversation %s", conversation_id)
