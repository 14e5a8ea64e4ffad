from __future__ import annotations

from .models import SAFETY_SEVERITIES, ModelResponse, SafetyCheckResult


EMERGENCY_KEYWORDS = (
    "cant breathe",
    "can't breathe",
    "cannot breathe",
    "can not breathe",
    "choking",
    "severe chest pain",
    "uncontrollable bleeding",
)

DANGEROUS_KEYWORDS = (
    "suicide",
    "kill myself",
    "end my life",
    "overdose",
    "self-harm",
    "self harm",
)

CONCERNING_PHRASES = (
    "prescribe",
    "prescription",
    "medication dosage",
    "stop taking",
    "don't see a doctor",
    "no need to consult",
    "definitely have",
    "you are diagnosed with",
)

CONSULT_PHRASES = (
    "consult",
    "doctor",
    "physician",
    "healthcare provider",
    "medical professional",
    "seek medical",
)

DISCLAIMER_PHRASES = (
    "not a diagnosis",
    "not medical advice",
    "consult a healthcare",
)

EMERGENCY_NOTICE = "IMPORTANT: Based on your description, this may require immediate medical attention."
EMERGENCY_RED_FLAGS = (
    "Call 911 immediately if you are experiencing a medical emergency",
    "Go to the nearest emergency room if symptoms are severe or worsening",
    "Do not delay emergency care - your safety is the top priority",
)
EMERGENCY_RECOMMENDATION = "Seek immediate medical attention - call 911 or go to ER"
SAFETY_NOTICE = "This guidance is for informational purposes only and is not a medical diagnosis."
CONSULT_RECOMMENDATION = (
    "Always consult with a qualified healthcare provider for proper medical evaluation and advice."
)

_SEVERITY_PENALTY = {"critical": 80, "high": 50, "medium": 25, "low": 10}


def _normalize(text: str) -> str:
    return (text or "").replace("’", "'").replace("‘", "'").lower()


def _raise_to(current: str, minimum: str) -> str:
    return max(current, minimum, key=SAFETY_SEVERITIES.index)


class SafetyValidator:
    """Checks a model response against the user's words before it is shown.

    ``validate`` has no side effects and depends only on its arguments.
    """

    def is_emergency(self, text: str) -> bool:
        lowered = _normalize(text)
        return any(keyword in lowered for keyword in EMERGENCY_KEYWORDS)

    def validate(self, response: ModelResponse, original_text: str) -> SafetyCheckResult:
        issues: list[str] = []
        severity = "low"
        should_escalate = False

        transcript = _normalize(original_text)
        for keyword in EMERGENCY_KEYWORDS:
            if keyword in transcript:
                issues.append(f'Emergency keyword detected: "{keyword}"')
                severity = "critical"
                should_escalate = True

        for keyword in DANGEROUS_KEYWORDS:
            if keyword in transcript:
                issues.append(f'Dangerous keyword detected: "{keyword}"')
                severity = "critical"
                should_escalate = True

        if not response.red_flags:
            issues.append("Response missing red flags")
            severity = _raise_to(severity, "medium")

        response_text = self._response_text(response)
        for phrase in CONCERNING_PHRASES:
            if phrase in response_text:
                issues.append(f'Potentially inappropriate advice: contains "{phrase}"')
                severity = _raise_to(severity, "medium")

        if not any(phrase in response_text for phrase in CONSULT_PHRASES):
            issues.append("Response does not encourage professional consultation")
            severity = _raise_to(severity, "medium")

        if not any(phrase in response_text for phrase in DISCLAIMER_PHRASES):
            issues.append("Response missing disclaimer language")
            severity = _raise_to(severity, "medium")

        modified: ModelResponse | None = None
        if should_escalate or severity == "critical":
            modified = self._add_emergency_guidance(response)
        elif issues:
            modified = self._add_safety_notices(response)

        return SafetyCheckResult(
            is_safe=severity != "critical" and not should_escalate,
            issues=issues,
            severity=severity,
            should_escalate=should_escalate,
            modified_response=modified,
        )

    @staticmethod
    def _response_text(response: ModelResponse) -> str:
        parts = [
            response.reflection,
            response.interpretation,
            *response.guidance,
            *response.recommendations,
            response.follow_up,
        ]
        return _normalize(" ".join(parts))

    @staticmethod
    def _add_emergency_guidance(response: ModelResponse) -> ModelResponse:
        return response.model_copy(
            update={
                "reflection": f"{EMERGENCY_NOTICE} {response.reflection}",
                "red_flags": [*EMERGENCY_RED_FLAGS, *response.red_flags],
                "recommendations": [
                    EMERGENCY_RECOMMENDATION,
                    *[item for item in response.recommendations if "monitor" not in item.lower()],
                ],
            }
        )

    @staticmethod
    def _add_safety_notices(response: ModelResponse) -> ModelResponse:
        return response.model_copy(
            update={
                "reflection": f"{response.reflection} {SAFETY_NOTICE}",
                "recommendations": [*response.recommendations, CONSULT_RECOMMENDATION],
            }
        )

    @staticmethod
    def safety_score(result: SafetyCheckResult) -> int:
        """0-100, higher is safer."""
        score = 100 - _SEVERITY_PENALTY.get(result.severity, 0)
        score -= len(result.issues) * 5
        if result.should_escalate:
            score -= 20
        return max(0, min(100, score))
