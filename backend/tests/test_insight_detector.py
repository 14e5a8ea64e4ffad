from __future__ import annotations

from datetime import timedelta

import pytest

from memory.time_utils import to_iso, utc_now


def _say(store, subject_id, text, when):
    store.insert_event(subject_id=subject_id, event_type="conversation", description=text, timestamp=to_iso(when))


def _sleep(memory_service, subject_id, hours, when):
    memory_service.record_vital(subject_id=subject_id, vital_type="sleep", value=hours, timestamp=to_iso(when))


def test_sleep_energy_correlation_creates_insight(memory_service, store):
    now = utc_now()
    _say(store, "s1", "Feeling really tired today", now - timedelta(days=1))
    _say(store, "s1", "No energy at all", now - timedelta(days=2))
    _say(store, "s1", "Exhausted after lunch", now - timedelta(days=3))
    _sleep(memory_service, "s1", 5.0, now - timedelta(days=1) + timedelta(hours=1))
    _sleep(memory_service, "s1", 4.5, now - timedelta(days=2))
    _sleep(memory_service, "s1", 5.5, now - timedelta(days=3))

    report = memory_service.detect_insights("s1", now=now)

    assert len(report.insights) == 1
    insight = report.insights[0]
    assert insight.confidence >= 0.6
    assert "less than 6 hours" in insight.insight
    assert "Average sleep on those days: 5.0 hours." in insight.insight
    assert report.diagnostics == []


def test_sleep_energy_needs_enough_readings(memory_service, store):
    now = utc_now()
    _say(store, "s1", "tired", now - timedelta(days=1))
    _say(store, "s1", "tired again", now - timedelta(days=2))
    _sleep(memory_service, "s1", 4.0, now - timedelta(days=1))
    _sleep(memory_service, "s1", 4.0, now - timedelta(days=2))

    report = memory_service.detect_insights("s1", now=now)

    assert report.insights == []
    sleep_rule = next(outcome for outcome in report.outcomes if outcome.name == "sleep_energy")
    assert sleep_rule.ok
    assert "insufficient data" in sleep_rule.detail


def test_stress_symptom_correlation(memory_service, store):
    now = utc_now()
    _say(store, "s1", "Bad headache this evening", now - timedelta(days=1))
    _say(store, "s1", "My stomach is upset", now - timedelta(days=2))
    _say(store, "s1", "So much stress at work", now - timedelta(days=1, hours=2))
    _say(store, "s1", "Feeling anxious about exams", now - timedelta(days=2, hours=1))

    report = memory_service.detect_insights("s1", now=now)

    texts = [insight.insight for insight in report.insights]
    assert any(text.startswith("Your physical symptoms often appear") for text in texts)


def test_habit_improvement_links_insight_to_issue(memory_service, store):
    now = utc_now()
    issue = store.insert_issue(subject_id="s1", label="Poor sleep", reported_at=to_iso(now - timedelta(days=10)))
    _sleep(memory_service, "s1", 5.0, now - timedelta(days=20))
    _sleep(memory_service, "s1", 5.0, now - timedelta(days=15))
    _sleep(memory_service, "s1", 6.5, now - timedelta(days=5))
    _sleep(memory_service, "s1", 6.5, now - timedelta(days=4))

    report = memory_service.detect_insights("s1", now=now)

    habit = [insight for insight in report.insights if insight.related_issue_id == issue.id]
    assert len(habit) == 1
    assert habit[0].confidence == 0.8
    assert "improved by approximately 30%" in habit[0].insight
    assert "10 days ago" in habit[0].insight


def test_habit_improvement_below_threshold_is_silent(memory_service, store):
    now = utc_now()
    store.insert_issue(subject_id="s1", label="Drink more water", reported_at=to_iso(now - timedelta(days=10)))
    for offset, amount in ((20, 2.0), (15, 2.0), (5, 2.2), (4, 2.2)):
        memory_service.record_vital(
            subject_id="s1", vital_type="water", value=amount, timestamp=to_iso(now - timedelta(days=offset))
        )

    report = memory_service.detect_insights("s1", now=now)

    assert report.insights == []


def test_detection_does_not_duplicate_insights(memory_service, store):
    now = utc_now()
    _say(store, "s1", "Bad headache", now - timedelta(days=1))
    _say(store, "s1", "Stomach cramps", now - timedelta(days=2))
    _say(store, "s1", "Stressed out", now - timedelta(days=1, hours=1))
    _say(store, "s1", "Nervous all day", now - timedelta(days=2, hours=1))

    memory_service.detect_insights("s1", now=now)
    second = memory_service.detect_insights("s1", now=now)

    assert second.insights == []
    assert len(store.list_insights("s1")) == 1


def test_failing_rule_does_not_block_others(memory_service, store, monkeypatch):
    now = utc_now()
    _say(store, "s1", "Bad headache", now - timedelta(days=1))
    _say(store, "s1", "Stomach cramps", now - timedelta(days=2))
    _say(store, "s1", "Stressed out", now - timedelta(days=1, hours=1))
    _say(store, "s1", "Nervous all day", now - timedelta(days=2, hours=1))

    original = store.list_events

    def _flaky(subject_id, **kwargs):
        if kwargs.get("event_type") == "vitals":
            raise RuntimeError("vitals table unavailable")
        return original(subject_id, **kwargs)

    monkeypatch.setattr(store, "list_events", _flaky)

    report = memory_service.detect_insights("s1", now=now)

    failed = {outcome.name for outcome in report.diagnostics}
    assert "sleep_energy" in failed
    assert "habit_improvement" not in failed
    assert len(report.insights) == 1


def test_sleep_energy_rate_uses_five_newest_fatigue_mentions(memory_service, store):
    now = utc_now()
    mentions = [now - timedelta(hours=12 + 48 * step) for step in range(6)]
    for index, when in enumerate(mentions):
        _say(store, "s1", f"Feeling tired, day {index}", when)
    for when in mentions[:3]:
        _sleep(memory_service, "s1", 4.0, when)

    report = memory_service.detect_insights("s1", now=now)

    assert len(report.insights) == 1
    assert report.insights[0].confidence == pytest.approx(0.6)
    assert "Average sleep on those days: 4.0 hours." in report.insights[0].insight


@pytest.mark.parametrize("offset_hours, expect_insight", [(23, True), (25, False)])
def test_sleep_energy_counts_readings_within_one_day(memory_service, store, offset_hours, expect_insight):
    now = utc_now()
    first, second = now - timedelta(days=6), now - timedelta(days=3)
    _say(store, "s1", "So tired today", first)
    _say(store, "s1", "No energy again", second)
    offset = timedelta(hours=offset_hours)
    for when in (first + offset, second + offset, second - offset):
        _sleep(memory_service, "s1", 4.5, when)

    report = memory_service.detect_insights("s1", now=now)

    assert bool(report.insights) is expect_insight
    if not expect_insight:
        sleep_rule = next(outcome for outcome in report.outcomes if outcome.name == "sleep_energy")
        assert sleep_rule.detail == "rate 0.00 below 0.60"


@pytest.mark.parametrize("offset_hours, expect_insight", [(23, True), (25, False)])
def test_stress_symptom_counts_stress_within_24_hours(memory_service, store, offset_hours, expect_insight):
    now = utc_now()
    first, second = now - timedelta(days=1), now - timedelta(days=4)
    _say(store, "s1", "Pounding headache", first)
    _say(store, "s1", "Stomach cramps after dinner", second)
    offset = timedelta(hours=offset_hours)
    _say(store, "s1", "Stressed about deadlines", first - offset)
    _say(store, "s1", "Overwhelmed at home", second - offset)

    report = memory_service.detect_insights("s1", now=now)

    stress_insights = [insight for insight in report.insights if "periods of stress" in insight.insight]
    assert bool(stress_insights) is expect_insight
