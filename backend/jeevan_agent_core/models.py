from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from memory.models import ISSUE_ACTIONS, ISSUE_SEVERITIES, ISSUE_STATUSES, MemoryContext
from memory.update import MemoryUpdateReport


SAFETY_SEVERITIES = ("low", "medium", "high", "critical")


class ModelInvalidResponse(Exception):
    """Model output did not match the response contract."""


def _choice_or_none(value: Any, allowed: set[str]) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip().lower()
    return cleaned if cleaned in allowed else None


class SuggestedIssueUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: str = "none"
    issue_id: str | None = Field(default=None, alias="issueId")
    label: str = ""
    status: str | None = None
    severity: str | None = None
    reason: str | None = None

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, value: Any) -> str:
        return _choice_or_none(value, ISSUE_ACTIONS) or "none"

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> str | None:
        return _choice_or_none(value, ISSUE_STATUSES)

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value: Any) -> str | None:
        return _choice_or_none(value, ISSUE_SEVERITIES)

    @field_validator("issue_id", "reason", mode="before")
    @classmethod
    def _optional_text(cls, value: Any) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("label", mode="before")
    @classmethod
    def _label(cls, value: Any) -> str:
        return "" if value is None else str(value).strip()


class ModelResponse(BaseModel):
    """Structured guidance returned by the language model."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reflection: str = Field(min_length=1)
    interpretation: str = Field(min_length=1)
    guidance: list[str]
    red_flags: list[str] = Field(alias="redFlags")
    follow_up: str = Field(alias="followUp", min_length=1)
    recommendations: list[str] = Field(default_factory=list)
    suggested_issue_updates: list[SuggestedIssueUpdate | None] = Field(
        default_factory=list, alias="suggestedIssueUpdates"
    )

    @field_validator("reflection", "interpretation", "follow_up", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Any:
        if isinstance(value, list):
            value = " ".join(str(item).strip() for item in value if str(item).strip())
        return value.strip() if isinstance(value, str) else value

    @field_validator("guidance", "red_flags", "recommendations", mode="before")
    @classmethod
    def _text_items(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        return [str(item).strip() for item in value if item is not None and str(item).strip()]

    @field_validator("recommendations", mode="before")
    @classmethod
    def _optional_list(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("suggested_issue_updates", mode="before")
    @classmethod
    def _issue_updates(cls, value: Any) -> list[Any]:
        # Non-object entries become None; memory update reports them per index.
        if not isinstance(value, list):
            return []
        return [item if isinstance(item, dict) else None for item in value]

    @classmethod
    def parse_payload(cls, payload: Any) -> "ModelResponse":
        if not isinstance(payload, dict):
            raise ModelInvalidResponse("Model response is not a JSON object.")
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
            )
            raise ModelInvalidResponse(f"Invalid model response: {problems}") from exc

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    def public_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"suggested_issue_updates"})


@dataclass
class SafetyCheckResult:
    is_safe: bool
    issues: list[str]
    severity: str
    should_escalate: bool
    modified_response: ModelResponse | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "is_safe": self.is_safe,
            "issues": list(self.issues),
            "severity": self.severity,
            "should_escalate": self.should_escalate,
            "modified": self.modified_response is not None,
        }


@dataclass
class ConversationResult:
    subject_id: str
    response: ModelResponse
    safety: SafetyCheckResult
    context: MemoryContext
    update_report: MemoryUpdateReport | None = None
    lifecycle: list[str] = field(default_factory=list)

    def as_envelope(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "response": self.response.public_payload(),
            "safety": self.safety.as_dict(),
            "memory_update": self.update_report.as_dict() if self.update_report else None,
            "lifecycle": self.lifecycle,
        }
