from __future__ import annotations

from datetime import timedelta

import pytest

from fakes import FakeProvider, model_payload
from jeevan_agent_core import (
    ConversationOrchestrator,
    ConversationWorker,
    ModelInvalidResponse,
    ModelProviderError,
)
from jeevan_agent_core.safety import EMERGENCY_NOTICE
from memory import StorageError
from memory.time_utils import to_iso, utc_now


def _orchestrator(memory_service, provider):
    return ConversationOrchestrator(memory_service, provider)


def _worker(memory_service, provider, **kwargs):
    return ConversationWorker(
        memory_service,
        _orchestrator(memory_service, provider),
        prompt_version="1.0.0",
        model_name="gpt-4o-mini",
        **kwargs,
    )


def test_turn_runs_full_lifecycle_and_updates_memory(memory_service):
    provider = FakeProvider(
        model_payload(
            suggestedIssueUpdates=[{"action": "create", "label": "Headaches", "status": "active", "severity": "mild"}]
        )
    )

    result = _orchestrator(memory_service, provider).respond("s1", "Another headache after school")

    assert result.lifecycle == ["received", "context_retrieved", "model_called", "validated", "persisted"]
    assert result.update_report.ok
    assert result.safety.is_safe
    assert [issue.label for issue in memory_service.retrieval.all_open_issues("s1")] == ["Headaches"]
    envelope = result.as_envelope()
    assert "suggestedIssueUpdates" not in envelope["response"]


def test_malformed_issue_update_is_reported_not_fatal(memory_service):
    provider = FakeProvider(model_payload(suggestedIssueUpdates=[None, {"action": "create", "label": "Headaches"}]))

    result = _orchestrator(memory_service, provider).respond("s1", "Headache again")

    assert result.lifecycle[-1] == "persisted"
    assert [outcome.name for outcome in result.update_report.diagnostics] == ["issue_update[0]"]
    assert [issue.label for issue in memory_service.retrieval.all_open_issues("s1")] == ["Headaches"]


def test_prompt_carries_previous_turns(memory_service):
    memory_service.store.insert_issue(subject_id="s1", label="Poor sleep", severity="moderate")
    provider = FakeProvider(model_payload())

    _orchestrator(memory_service, provider).respond("s1", "Slept badly again", {"age": 42})

    system, user = provider.calls[0]
    assert system["role"] == "system"
    assert "Poor sleep (active, moderate)" in system["content"]
    assert "- Age: 42 years" in user["content"]


def test_emergency_text_escalates_regardless_of_model_output(memory_service):
    provider = FakeProvider(model_payload())

    result = _orchestrator(memory_service, provider).respond("s1", "Grandpa says he cannot breathe")

    assert result.safety.should_escalate
    assert result.response.reflection.startswith(EMERGENCY_NOTICE)
    event = memory_service.store.list_events("s1")[0]
    assert event.metadata["reflection"].startswith(EMERGENCY_NOTICE)


def test_invalid_model_output_propagates(memory_service):
    payload = model_payload()
    payload.pop("followUp")

    with pytest.raises(ModelInvalidResponse):
        _orchestrator(memory_service, FakeProvider(payload)).respond("s1", "hello")

    assert memory_service.store.list_events("s1") == []


def test_worker_completes_conversation(memory_service):
    conversation = memory_service.conversations.create(subject_id="s1", transcript="Mild cough since Monday")

    summary = _worker(memory_service, FakeProvider(model_payload())).process(conversation["id"])

    stored = memory_service.conversations.get(conversation["id"])
    assert summary["status"] == "completed"
    assert summary["safety_score"] == 90
    assert summary["insights_detected"] == 0
    assert stored["status"] == "completed"
    assert stored["model"] == "gpt-4o-mini"
    assert stored["prompt_version"] == "1.0.0"
    assert "suggestedIssueUpdates" not in stored["response"]


def test_worker_stores_fallback_on_invalid_output(memory_service):
    conversation = memory_service.conversations.create(subject_id="s1", transcript="Stomach ache")
    payload = model_payload()
    payload.pop("redFlags")

    with pytest.raises(ModelInvalidResponse):
        _worker(memory_service, FakeProvider(payload)).process(conversation["id"])

    stored = memory_service.conversations.get(conversation["id"])
    assert stored["status"] == "failed"
    assert stored["model"] == "fallback"
    assert "redFlags" in stored["error_message"]
    assert "healthcare professional" in stored["response"]["reflection"]


def test_worker_stores_fallback_when_provider_fails(memory_service):
    conversation = memory_service.conversations.create(subject_id="s1", transcript="Dizzy spells")
    provider = FakeProvider(error=ModelProviderError("HTTP 503", retryable=True, status_code=503))

    with pytest.raises(ModelProviderError):
        _worker(memory_service, provider).process(conversation["id"])

    assert memory_service.conversations.get(conversation["id"])["status"] == "failed"


def test_worker_rejects_unknown_conversation(memory_service):
    with pytest.raises(LookupError):
        _worker(memory_service, FakeProvider(model_payload())).process("missing")


def _seed_stress_pattern(store, subject_id):
    now = utc_now()
    for text, when in (
        ("Bad headache", now - timedelta(days=1)),
        ("Stomach cramps", now - timedelta(days=2)),
        ("Stressed out", now - timedelta(days=1, hours=1)),
        ("Nervous all day", now - timedelta(days=2, hours=1)),
    ):
        store.insert_event(subject_id=subject_id, event_type="conversation", description=text, timestamp=to_iso(when))


def test_worker_runs_pattern_detection_after_completion(memory_service):
    _seed_stress_pattern(memory_service.store, "s1")
    conversation = memory_service.conversations.create(subject_id="s1", transcript="Mild cough since Monday")

    summary = _worker(memory_service, FakeProvider(model_payload())).process(conversation["id"])

    assert summary["insights_detected"] == 1
    assert memory_service.store.list_insights("s1")[0].insight.startswith("Your physical symptoms")


def test_worker_leaves_detection_to_caller_when_not_inline(memory_service):
    _seed_stress_pattern(memory_service.store, "s1")
    conversation = memory_service.conversations.create(subject_id="s1", transcript="Mild cough since Monday")
    worker = _worker(memory_service, FakeProvider(model_payload()), inline_detection=False)

    summary = worker.process(conversation["id"])

    assert summary["insights_detected"] is None
    assert memory_service.store.list_insights("s1") == []
    assert worker.detect_patterns("s1") == 1


def test_conversation_create_raises_storage_error_when_row_is_missing(memory_service, monkeypatch):
    monkeypatch.setattr(memory_service.conversations, "get", lambda conversation_id: None)

    with pytest.raises(StorageError):
        memory_service.conversations.create(subject_id="s1", transcript="hello")
