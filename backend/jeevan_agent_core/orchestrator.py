from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Mapping

from memory.service import MemoryService

from .lifecycle import ConversationLifecycle
from .llm import LLMProvider
from .models import ConversationResult, ModelResponse
from .prompts import PromptBuilder
from .safety import SafetyValidator

logger = logging.getLogger(__name__)


class ConversationOrchestrator:
    """Runs one conversation turn: context, model call, safety review, memory update.

    Model-call and schema failures propagate; memory failures are degraded by
    the memory layer and only surface as diagnostics on the update report.
    """

    def __init__(
        self,
        memory: MemoryService,
        provider: LLMProvider,
        *,
        safety: SafetyValidator | None = None,
        prompts: PromptBuilder | None = None,
    ) -> None:
        self.memory = memory
        self.provider = provider
        self.safety = safety or SafetyValidator()
        self.prompts = prompts or PromptBuilder()

    def respond(
        self,
        subject_id: str,
        user_text: str,
        profile_context: Mapping[str, Any] | None = None,
        *,
        conversation_ref: str | None = None,
        now: datetime | None = None,
    ) -> ConversationResult:
        lifecycle = ConversationLifecycle(conversation_ref or uuid.uuid4().hex)
        try:
            context = self.memory.retrieval.retrieve(subject_id)
            lifecycle.transition("context_retrieved")

            messages = self.prompts.messages(user_text, context, profile_context, now=now)
            raw = self.provider.complete_json(messages)
            lifecycle.transition("model_called")

            response = ModelResponse.parse_payload(raw)
            safety = self.safety.validate(response, user_text)
            if safety.issues:
                logger.warning(
                    "Safety review flagged %d issue(s) for subject %s (severity=%s, escalate=%s)",
                    len(safety.issues),
                    subject_id,
                    safety.severity,
                    safety.should_escalate,
                )
            final = safety.modified_response or response
            lifecycle.transition("validated")

            report = self.memory.updater.update(subject_id, user_text, final.to_payload(), context, now=now)
            for outcome in report.diagnostics:
                logger.warning("Memory update step %s failed for subject %s: %s", outcome.name, subject_id, outcome.error)
            lifecycle.transition("persisted")
        except Exception:
            failed_in = lifecycle.state
            if not lifecycle.finished:
                lifecycle.transition("failed")
            logger.exception("Conversation %s failed in state %s", lifecycle.conversation_ref, failed_in)
            raise

        return ConversationResult(
            subject_id=subject_id,
            response=final,
            safety=safety,
            context=context,
            update_report=report,
            lifecycle=list(lifecycle.history),
        )
