from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Mapping

from memory.models import MemoryContext
from memory.time_utils import days_between, parse_iso, utc_now


RESPONSE_CONTRACT = {
    "reflection": "Empathetic acknowledgment WITH continuity reference if applicable",
    "interpretation": "What this means given their ongoing issues and patterns (or note if it's new)",
    "guidance": ["Detailed step 1 with timing", "Detailed step 2", "Step 3", "Step 4"],
    "redFlags": ["When to seek care point 1", "Warning sign 2", "Follow-up recommendation 3"],
    "followUp": "One specific question OR time-based next step",
    "recommendations": ["Lifestyle recommendation 1", "Recommendation 2"],
    "suggestedIssueUpdates": [
        {
            "action": "create | update | resolve | none",
            "issueId": "issue id for update/resolve, null for create",
            "label": "Brief issue name like 'Headaches' or 'Poor sleep'",
            "status": "active | improving | resolved | monitoring",
            "severity": "mild | moderate | severe",
            "reason": "1-2 sentence explanation for this update",
        }
    ],
}

RESPONSE_RULES = """YOUR RESPONSE MUST:
1. REFLECTION: mirror their feeling and reference continuity with tracked issues when it applies.
2. INTERPRETATION: connect today's message to past patterns, or say that it looks like a new concern.
3. GUIDANCE: 4-6 specific, actionable, safe steps.
4. RED FLAGS: 3-4 clear signals for when to seek care.
5. FOLLOW-UP: one clarifying question or one time-based check-in.
6. SUGGESTED ISSUE UPDATES: create, update, resolve or leave tracked issues unchanged.

SAFETY RULES:
- Never diagnose or prescribe medications.
- For severe symptoms (chest pain, difficulty breathing, severe headache) always flag an emergency.
- For children, pregnant women and the elderly use a lower threshold for medical consultation.
- When uncertain, recommend professional care.

IMPORTANT:
- Always include the suggestedIssueUpdates array, even if every action is "none".
- Only create issues for ongoing or recurring concerns; one-time minor issues need no tracking."""

FALLBACK_RESPONSE = {
    "reflection": (
        "We're unable to process your message at this time. "
        "Please consult a healthcare professional for proper evaluation."
    ),
    "interpretation": "Your message could not be analysed automatically, so no interpretation is available.",
    "guidance": [
        "Monitor your symptoms closely",
        "Keep a record of symptoms and changes",
        "Stay hydrated and rest",
    ],
    "redFlags": [
        "Seek emergency care for severe symptoms: chest pain, difficulty breathing, severe bleeding",
        "Contact doctor immediately if symptoms worsen rapidly",
    ],
    "followUp": "Schedule an appointment with your healthcare provider and share your symptom notes.",
    "recommendations": [
        "Consult your primary care physician",
        "Visit urgent care if symptoms persist",
        "Call emergency services for medical emergencies",
    ],
}


def fallback_response() -> dict[str, Any]:
    return json.loads(json.dumps(FALLBACK_RESPONSE))


def relative_day(timestamp: str | None, now: datetime) -> str:
    parsed = parse_iso(timestamp)
    if parsed is None:
        return "unknown date"
    days = max(0, days_between(parsed, now))
    if days == 0:
        return "today"
    if days == 1:
        return "yesterday"
    if days < 7:
        return f"{days} days ago"
    if days < 30:
        return f"{days // 7} weeks ago"
    return f"{days // 30} months ago"


def _days_since(timestamp: str | None, now: datetime) -> int:
    parsed = parse_iso(timestamp)
    return max(0, days_between(parsed, now)) if parsed else 0


class PromptBuilder:
    """Renders memory context and the user's message into chat messages."""

    def __init__(self, assistant_name: str = "Jeevan") -> None:
        self.assistant_name = assistant_name

    def system_prompt(self, context: MemoryContext, *, now: datetime | None = None) -> str:
        now = now or utc_now()
        lines = [
            f"You are {self.assistant_name}, a healthcare concierge managing an ongoing family health journey.",
            "",
            "CRITICAL CONTEXT:",
            "You are NOT starting fresh. You have memory of this person's health over time.",
            "",
        ]
        if context.active_issues:
            lines.append("ACTIVE ONGOING ISSUES:")
            for issue in context.active_issues:
                lines.append(
                    f"- [{issue.id}] {issue.label} ({issue.status}, {issue.severity}) - "
                    f"ongoing for {_days_since(issue.first_reported_at, now)} days, "
                    f"last discussed {_days_since(issue.last_mentioned_at, now)} days ago"
                )
        else:
            lines.append("No active issues currently tracked.")
        if context.recent_events:
            lines.extend(["", "RECENT HEALTH EVENTS:"])
            for event in context.recent_events:
                lines.append(f"- {event.description} ({relative_day(event.timestamp, now)})")
        if context.insights:
            lines.extend(["", "LEARNED INSIGHTS:"])
            for insight in context.insights:
                lines.append(f"- {insight.insight} (confidence: {round(insight.confidence * 100)}%)")
        lines.extend(
            [
                "",
                RESPONSE_RULES,
                "",
                "OUTPUT JSON SCHEMA:",
                json.dumps(RESPONSE_CONTRACT, indent=2),
            ]
        )
        return "\n".join(lines)

    def user_prompt(self, user_text: str, profile_context: Mapping[str, Any] | None = None) -> str:
        profile = dict(profile_context or {})
        lines = [f'USER QUERY: "{user_text.strip()}"', "", "PATIENT CONTEXT:"]
        age = profile.get("age")
        lines.append(f"- Age: {age} years" if age else "- Age: Not provided")
        if profile.get("gender"):
            lines.append(f"- Gender: {profile['gender']}")
        if profile.get("conditions"):
            lines.append(f"- Existing conditions: {_listing(profile['conditions'])}")
        if profile.get("medications"):
            lines.append(f"- Current medications: {_listing(profile['medications'])}")
        if profile.get("recentVitals"):
            lines.append(f"- Recent vitals: {json.dumps(profile['recentVitals'], sort_keys=True)}")
        lines.extend(
            [
                "",
                "Please provide health guidance following the structure in your system instructions.",
            ]
        )
        return "\n".join(lines)

    def messages(
        self,
        user_text: str,
        context: MemoryContext,
        profile_context: Mapping[str, Any] | None = None,
        *,
        now: datetime | None = None,
    ) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": self.system_prompt(context, now=now)},
            {"role": "user", "content": self.user_prompt(user_text, profile_context)},
        ]


def _listing(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value)
    return str(value)
