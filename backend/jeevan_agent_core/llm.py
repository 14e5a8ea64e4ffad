from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Protocol

import httpx

from .config import LLMConfig
from .models import ModelInvalidResponse

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {408, 429}


class ModelProviderError(Exception):
    def __init__(self, message: str, *, retryable: bool = False, status_code: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class LLMProvider(Protocol):
    name: str
    model: str

    def complete_json(self, messages: list[dict[str, str]]) -> dict[str, Any]: ...


_DECODER = json.JSONDecoder()


def extract_json_object(raw_text: str) -> dict[str, Any] | None:
    """First JSON object in ``raw_text``, tolerating prose or code fences around it."""
    text = (raw_text or "").strip()
    start = text.find("{")
    while start != -1:
        try:
            payload, _ = _DECODER.raw_decode(text, start)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            return payload
        start = text.find("{", start + 1)
    return None


def _completion_text(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices") or []
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    content = (choices[0].get("message") or {}).get("content")
    if isinstance(content, list):
        return "\n".join(
            part["text"] for part in content if isinstance(part, dict) and isinstance(part.get("text"), str)
        )
    return content if isinstance(content, str) else ""


def _provider_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"].strip()
        if isinstance(error, str) and error.strip():
            return error.strip()
    return f"HTTP {response.status_code}"


class OpenAICompatibleProvider:
    """Chat-completions client in JSON mode with exponential-backoff retries."""

    name = "openai-compatible"

    def __init__(
        self,
        config: LLMConfig,
        *,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.model = config.model
        self._transport = transport
        self._sleep = sleep

    @property
    def available(self) -> bool:
        return self.config.available

    def complete_json(self, messages: list[dict[str, str]]) -> dict[str, Any]:
        if not self.available:
            raise ModelProviderError("No model provider API key configured.")

        attempts = self.config.retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                text = self._request(messages)
                break
            except ModelProviderError as exc:
                if not exc.retryable or attempt == attempts:
                    logger.error("Model call failed after %d attempt(s): %s", attempt, exc)
                    raise
                delay = self.config.retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning("Model call attempt %d failed (%s); retrying in %.1fs", attempt, exc, delay)
                self._sleep(delay)

        payload = extract_json_object(text)
        if payload is None:
            raise ModelInvalidResponse(f"Model returned non-JSON content: {text[:200]!r}")
        return payload

    def _request(self, messages: list[dict[str, str]]) -> str:
        body = {
            "model": self.config.model,
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
            "response_format": {"type": "json_object"},
        }
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }
        timeout = httpx.Timeout(self.config.timeout_seconds, connect=8.0)
        started = time.monotonic()
        try:
            with httpx.Client(timeout=timeout, transport=self._transport) as client:
                response = client.post(f"{self.config.base_url}/chat/completions", headers=headers, json=body)
        except httpx.TransportError as exc:
            raise ModelProviderError(f"Transport error: {exc}", retryable=True) from exc

        if response.status_code >= 400:
            raise ModelProviderError(
                _provider_error_message(response),
                retryable=response.status_code >= 500 or response.status_code in _RETRYABLE_STATUS,
                status_code=response.status_code,
            )
        try:
            completion = response.json()
        except ValueError as exc:
            raise ModelProviderError("Provider returned a non-JSON body.", retryable=True) from exc

        logger.info(
            "Model completion received in %.2fs (model=%s)",
            time.monotonic() - started,
            completion.get("model", self.config.model) if isinstance(completion, dict) else self.config.model,
        )
        return _completion_text(completion if isinstance(completion, dict) else {})
