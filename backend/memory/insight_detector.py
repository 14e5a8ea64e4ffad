from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from .health_store import HealthMemoryStore
from .models import CONTEXT_ISSUE_STATUSES, ActiveIssue, EventMemory, Insight, StepOutcome
from .time_utils import days_between, parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

FATIGUE_PATTERN = r"tired|fatigue|exhausted|energy|weak"
STRESS_PATTERN = r"stress|anxious|anxiety|worry|nervous|overwhelmed"
SYMPTOM_PATTERN = r"headache|stomach|nausea|pain|ache|tense"

KEYWORD_SEARCH_LIMIT = 20
LOW_SLEEP_HOURS = 6.0
HABIT_INSIGHT_CONFIDENCE = 0.8


@dataclass(frozen=True)
class EventSelector:
    """Which events feed one side of a rule: keyword matches or vital readings."""

    pattern: str | None = None
    vital_type: str | None = None
    lookback_days: int | None = None
    limit: int | None = KEYWORD_SEARCH_LIMIT

    def select(self, store: HealthMemoryStore, subject_id: str, now: datetime) -> list[EventMemory]:
        since = to_iso(now - timedelta(days=self.lookback_days)) if self.lookback_days else None
        if self.vital_type:
            events = store.list_events(subject_id, event_type="vitals", since=since)
            return [
                event
                for event in events
                if event.metadata.get("type") == self.vital_type and event.vital_value() is not None
            ]
        return store.list_events(subject_id, pattern=self.pattern, since=since, limit=self.limit)


@dataclass(frozen=True)
class CorrelationRule:
    """For each sampled anchor event, look for a signal event inside ``window``.

    The nearest-listed signal inside the window counts as a match when
    ``signal_matches`` accepts it (or when no predicate is set). The match rate
    over the sampled anchors becomes the insight confidence.
    """

    name: str
    anchors: EventSelector
    signals: EventSelector
    min_anchors: int
    min_signals: int
    window: timedelta
    threshold: float
    template: str
    signal_matches: Callable[[EventMemory], bool] | None = None
    template_values: Callable[[list[EventMemory]], dict[str, Any]] | None = None
    sample_size: int = 5


@dataclass(frozen=True)
class HabitRule:
    name: str
    label_keywords: tuple[str, ...]
    vital_type: str
    min_improvement_pct: float
    template: str
    lookback_days: int = 30
    min_readings: int = 4
    min_per_side: int = 2


def _is_low_sleep(event: EventMemory) -> bool:
    value = event.vital_value()
    return value is not None and value < LOW_SLEEP_HOURS


def _low_sleep_summary(signals: list[EventMemory]) -> dict[str, Any]:
    low = [event.vital_value() for event in signals if _is_low_sleep(event)]
    average = sum(low) / len(low) if low else 0.0
    return {"threshold": LOW_SLEEP_HOURS, "average": average}


CORRELATION_RULES: tuple[CorrelationRule, ...] = (
    CorrelationRule(
        name="sleep_energy",
        anchors=EventSelector(pattern=FATIGUE_PATTERN),
        signals=EventSelector(vital_type="sleep", lookback_days=7),
        min_anchors=2,
        min_signals=3,
        window=timedelta(days=1),
        threshold=0.6,
        template=(
            "Your fatigue tends to occur when you sleep less than {threshold:g} hours. "
            "Average sleep on those days: {average:.1f} hours."
        ),
        signal_matches=_is_low_sleep,
        template_values=_low_sleep_summary,
    ),
    CorrelationRule(
        name="stress_symptom",
        anchors=EventSelector(pattern=SYMPTOM_PATTERN),
        signals=EventSelector(pattern=STRESS_PATTERN),
        min_anchors=2,
        min_signals=2,
        window=timedelta(hours=24),
        threshold=0.5,
        template=(
            "Your physical symptoms often appear during or shortly after periods of stress. "
            "Stress management techniques may help reduce these symptoms."
        ),
    ),
)

HABIT_RULES: tuple[HabitRule, ...] = (
    HabitRule(
        name="sleep_improvement",
        label_keywords=("sleep",),
        vital_type="sleep",
        min_improvement_pct=10.0,
        template=(
            "Since you started tracking sleep {days} days ago, your sleep has improved by "
            "approximately {improvement}%. Keep up the good work!"
        ),
    ),
    HabitRule(
        name="hydration_improvement",
        label_keywords=("hydration", "water"),
        vital_type="water",
        min_improvement_pct=15.0,
        template=(
            "Your water intake has increased by {improvement}% since you started tracking. "
            "This is great for your overall health!"
        ),
    ),
)


@dataclass
class DetectionReport:
    subject_id: str
    outcomes: list[StepOutcome] = field(default_factory=list)
    insights: list[Insight] = field(default_factory=list)

    @property
    def diagnostics(self) -> list[StepOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]

    def as_dict(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "insights": [insight.as_dict() for insight in self.insights],
            "rules": [
                {"name": outcome.name, "ok": outcome.ok, "detail": outcome.detail, "error": outcome.error}
                for outcome in self.outcomes
            ],
        }


def _timestamp(event: EventMemory) -> datetime | None:
    return parse_iso(event.timestamp)


class InsightDetector:
    def __init__(
        self,
        store: HealthMemoryStore,
        correlation_rules: tuple[CorrelationRule, ...] = CORRELATION_RULES,
        habit_rules: tuple[HabitRule, ...] = HABIT_RULES,
    ) -> None:
        self._store = store
        self._correlation_rules = correlation_rules
        self._habit_rules = habit_rules

    def detect(self, subject_id: str, *, now: datetime | None = None) -> DetectionReport:
        current = now or utc_now()
        report = DetectionReport(subject_id=subject_id)

        for rule in self._correlation_rules:
            try:
                insight, detail = self._run_correlation(rule, subject_id, current)
            except Exception as exc:
                report.outcomes.append(StepOutcome.failure(rule.name, exc))
                continue
            if insight:
                report.insights.append(insight)
            report.outcomes.append(StepOutcome.success(rule.name, detail))

        try:
            habit_insights, detail = self._run_habit_rules(subject_id, current)
            report.insights.extend(habit_insights)
            report.outcomes.append(StepOutcome.success("habit_improvement", detail))
        except Exception as exc:
            report.outcomes.append(StepOutcome.failure("habit_improvement", exc))

        logger.info(
            "Pattern analysis for subject %s: %d new insights, %d rule failures",
            subject_id,
            len(report.insights),
            len(report.diagnostics),
        )
        return report

    def correlation_rate(
        self,
        rule: CorrelationRule,
        anchors: list[EventMemory],
        signals: list[EventMemory],
    ) -> float:
        sample = anchors[: rule.sample_size]
        if not sample:
            return 0.0
        matches = 0
        for anchor in sample:
            anchor_time = _timestamp(anchor)
            if not anchor_time:
                continue
            nearby = self._first_within(anchor_time, signals, rule.window)
            if nearby and (rule.signal_matches is None or rule.signal_matches(nearby)):
                matches += 1
        return matches / len(sample)

    @staticmethod
    def _first_within(anchor_time: datetime, signals: list[EventMemory], window: timedelta) -> EventMemory | None:
        for signal in signals:
            signal_time = _timestamp(signal)
            if signal_time and abs(anchor_time - signal_time) <= window:
                return signal
        return None

    def _run_correlation(
        self,
        rule: CorrelationRule,
        subject_id: str,
        now: datetime,
    ) -> tuple[Insight | None, str]:
        anchors = rule.anchors.select(self._store, subject_id, now)
        signals = rule.signals.select(self._store, subject_id, now)
        if len(anchors) < rule.min_anchors or len(signals) < rule.min_signals:
            return None, f"insufficient data ({len(anchors)} anchors, {len(signals)} signals)"

        rate = self.correlation_rate(rule, anchors, signals)
        if rate < rule.threshold:
            return None, f"rate {rate:.2f} below {rule.threshold:.2f}"

        values = rule.template_values(signals) if rule.template_values else {}
        insight = self._store.insert_insight(
            subject_id=subject_id,
            insight=rule.template.format(**values),
            confidence=rate,
        )
        logger.info("%s correlation for subject %s (%d%% confidence)", rule.name, subject_id, round(rate * 100))
        return insight, f"rate {rate:.2f}" + ("" if insight else ", duplicate insight skipped")

    def vital_improvement(self, subject_id: str, rule: HabitRule, since: datetime, now: datetime) -> float | None:
        """Percent change of the vital's mean after ``since`` versus before it."""
        readings = EventSelector(vital_type=rule.vital_type, lookback_days=rule.lookback_days).select(
            self._store, subject_id, now
        )
        if len(readings) < rule.min_readings:
            return None
        before: list[float] = []
        after: list[float] = []
        for event in readings:
            observed = _timestamp(event)
            value = event.vital_value()
            if not observed or value is None:
                continue
            (before if observed < since else after).append(value)
        if len(before) < rule.min_per_side or len(after) < rule.min_per_side:
            return None
        mean_before = sum(before) / len(before)
        mean_after = sum(after) / len(after)
        if mean_before == 0:
            return None
        return (mean_after - mean_before) / mean_before * 100

    def _run_habit_rules(self, subject_id: str, now: datetime) -> tuple[list[Insight], str]:
        issues = self._store.list_issues(subject_id, statuses=CONTEXT_ISSUE_STATUSES, order="priority", limit=5)
        created: list[Insight] = []
        checked = 0
        for issue in issues:
            for rule in self._habit_rules:
                if not self._issue_matches(issue, rule):
                    continue
                checked += 1
                insight = self._habit_insight(subject_id, issue, rule, now)
                if insight:
                    created.append(insight)
        return created, f"{checked} issue checks, {len(created)} insights"

    @staticmethod
    def _issue_matches(issue: ActiveIssue, rule: HabitRule) -> bool:
        label = issue.label.lower()
        return any(keyword in label for keyword in rule.label_keywords)

    def _habit_insight(self, subject_id: str, issue: ActiveIssue, rule: HabitRule, now: datetime) -> Insight | None:
        first_reported = parse_iso(issue.first_reported_at)
        if not first_reported:
            return None
        improvement = self.vital_improvement(subject_id, rule, first_reported, now)
        if improvement is None or improvement <= rule.min_improvement_pct:
            return None
        text = rule.template.format(
            days=days_between(first_reported, now),
            improvement=round(improvement),
        )
        insight = self._store.insert_insight(
            subject_id=subject_id,
            insight=text,
            confidence=HABIT_INSIGHT_CONFIDENCE,
            related_issue_id=issue.id,
        )
        if insight:
            logger.info("%s detected for issue %s", rule.name, issue.id)
        return insight
