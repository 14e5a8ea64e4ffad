from __future__ import annotations

import json

import httpx
import pytest

from fakes import model_payload
from jeevan_agent_core import LLMConfig, ModelInvalidResponse, ModelProviderError, OpenAICompatibleProvider
from jeevan_agent_core.llm import extract_json_object


def _config(**overrides) -> LLMConfig:
    values = {
        "api_key": "test-key",
        "base_url": "https://llm.example.test/v1",
        "model": "gpt-4o-mini",
        "temperature": 0.3,
        "max_tokens": 2000,
        "timeout_seconds": 5.0,
        "retry_attempts": 3,
        "retry_backoff_seconds": 2.0,
    }
    values.update(overrides)
    return LLMConfig(**values)


def _completion(content: str) -> dict:
    return {"model": "gpt-4o-mini", "choices": [{"message": {"role": "assistant", "content": content}}]}


def _provider(handler, **config_overrides):
    sleeps: list[float] = []
    provider = OpenAICompatibleProvider(
        _config(**config_overrides),
        transport=httpx.MockTransport(handler),
        sleep=sleeps.append,
    )
    return provider, sleeps


def test_request_uses_json_mode_and_returns_object():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_completion(json.dumps(model_payload())))

    provider, sleeps = _provider(handler)
    payload = provider.complete_json([{"role": "user", "content": "hi"}])

    assert payload["followUp"] == model_payload()["followUp"]
    assert sleeps == []
    body = json.loads(seen[0].content)
    assert seen[0].url == "https://llm.example.test/v1/chat/completions"
    assert seen[0].headers["Authorization"] == "Bearer test-key"
    assert body["response_format"] == {"type": "json_object"}
    assert body["model"] == "gpt-4o-mini"


def test_server_errors_retry_with_exponential_backoff():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] < 3:
            return httpx.Response(503, json={"error": {"message": "overloaded"}})
        return httpx.Response(200, json=_completion(json.dumps(model_payload())))

    provider, sleeps = _provider(handler)
    provider.complete_json([{"role": "user", "content": "hi"}])

    assert calls["count"] == 3
    assert sleeps == [2.0, 4.0]


def test_rate_limit_is_retried_until_attempts_run_out():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "slow down"}})

    provider, sleeps = _provider(handler, retry_attempts=2, retry_backoff_seconds=0.5)

    with pytest.raises(ModelProviderError) as exc_info:
        provider.complete_json([{"role": "user", "content": "hi"}])

    assert exc_info.value.status_code == 429
    assert str(exc_info.value) == "slow down"
    assert sleeps == [0.5]


def test_client_errors_are_not_retried():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(401, json={"error": {"message": "bad key"}})

    provider, sleeps = _provider(handler)

    with pytest.raises(ModelProviderError):
        provider.complete_json([{"role": "user", "content": "hi"}])

    assert calls["count"] == 1
    assert sleeps == []


def test_transport_errors_are_retried():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json=_completion(json.dumps(model_payload())))

    provider, sleeps = _provider(handler)
    provider.complete_json([{"role": "user", "content": "hi"}])

    assert calls["count"] == 2
    assert sleeps == [2.0]


def test_non_json_completion_is_invalid_response():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_completion("Sorry, I cannot help with that."))

    provider, _ = _provider(handler)

    with pytest.raises(ModelInvalidResponse):
        provider.complete_json([{"role": "user", "content": "hi"}])


def test_missing_api_key_fails_fast():
    provider, _ = _provider(lambda request: httpx.Response(200), api_key="")

    with pytest.raises(ModelProviderError):
        provider.complete_json([{"role": "user", "content": "hi"}])


def test_extract_json_object_tolerates_wrapping_text():
    assert extract_json_object('Here you go: {"reflection": "ok", "nested": {"a": 1}} thanks') == {
        "reflection": "ok",
        "nested": {"a": 1},
    }
    assert extract_json_object("[1, 2]") is None
    assert extract_json_object("") is None
    assert extract_json_object('```json\n{"broken": }\n```\n{"followUp": "ok"}') == {"followUp": "ok"}


def test_list_form_message_content_is_joined():
    parts = [{"type": "text", "text": '{"reflection": '}, {"type": "text", "text": '"ok"}'}]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": parts}}]})

    provider, _ = _provider(handler)

    assert provider.complete_json([{"role": "user", "content": "hi"}]) == {"reflection": "ok"}
