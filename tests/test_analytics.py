"""Unit tests for the heuristic change analytics model."""

from datetime import datetime, timedelta, timezone

from roster_changes.history.ledger import summarize_records
from roster_changes.models.config import AnalyticsConfig
from roster_changes.sync.analytics import HeuristicChangeAnalytics, peak_hours

START = datetime(2024, 6, 1, 0, 0, tzinfo=timezone.utc)
END = START + timedelta(hours=24)


def test_velocity_and_acceleration(make_record):
    changes = [
        make_record(entity_id=f"u{i}", created_at=START + timedelta(hours=i)) for i in range(12)
    ]
    previous = [
        make_record(entity_id=f"p{i}", created_at=START - timedelta(hours=i + 1)) for i in range(6)
    ]

    analytics = HeuristicChangeAnalytics().analyze(changes, previous, START, END)

    assert analytics.change_velocity == 0.5
    assert analytics.change_acceleration == 0.25


def test_peak_hours_exceed_twice_the_hourly_mean(make_record):
    changes = [
        make_record(entity_id=f"a{i}", created_at=START + timedelta(hours=9)) for i in range(10)
    ]
    changes += [
        make_record(entity_id=f"b{h}", created_at=START + timedelta(hours=h))
        for h in range(0, 24, 4)
    ]

    assert peak_hours(changes) == [9]
    assert peak_hours([]) == []

    analytics = HeuristicChangeAnalytics().analyze(changes, [], START, END)
    assert analytics.peak_change_hours == [9]
    assert analytics.common_change_patterns[0].id == "peak_hours"
    assert analytics.common_change_patterns[0].automatic_actions == ["schedule_sync_off_peak"]


def test_anomalies_are_high_scoring_changes(make_record):
    changes = [
        make_record(entity_id="calm", change_score=40.0),
        make_record(entity_id="wild", change_score=95.0, significance="critical"),
    ]

    analytics = HeuristicChangeAnalytics().analyze(changes, [], START, END)

    assert [c.entity_id for c in analytics.anomalous_changes] == ["wild"]


def test_prediction_requires_velocity_above_threshold(make_record):
    busy = [
        make_record(entity_id=f"c{i}", entity_type="class", created_at=START + timedelta(minutes=i))
        for i in range(30)
    ]
    busy += [make_record(entity_id="u1", created_at=START)]
    one_hour = START + timedelta(hours=1)

    predicted = HeuristicChangeAnalytics().analyze(busy, [], START, one_hour).predicted_changes
    quiet = HeuristicChangeAnalytics().analyze(busy[:5], [], START, one_hour).predicted_changes
    disabled = HeuristicChangeAnalytics(AnalyticsConfig(enable_prediction=False)).analyze(
        busy, [], START, one_hour
    )

    assert [(p.entity_type, p.confidence, p.timeframe_hours) for p in predicted] == [
        ("class", 0.7, 2)
    ]
    assert quiet == []
    assert disabled.predicted_changes == []


def test_patterns_for_high_frequency_and_mass_deletion(make_record):
    changes = [make_record(entity_id=f"u{i}") for i in range(45)]
    changes += [make_record(entity_id=f"d{i}", change_type="deleted") for i in range(6)]

    patterns = HeuristicChangeAnalytics().detect_patterns(changes, "user")

    assert [p.id for p in patterns] == ["high_freq_user", "deletion_user"]
    assert patterns[1].automatic_actions == ["admin_notification", "sync_pause"]


def test_recommendations(make_record):
    model = HeuristicChangeAnalytics(AnalyticsConfig(high_volume_threshold=2))
    records = [
        make_record(entity_id="u1", significance="critical"),
        make_record(entity_id="u2", change_type="deleted"),
        make_record(entity_id="u3"),
    ]
    summary = summarize_records(records)
    patterns = model.detect_patterns(records, "user")

    recommendations = model.recommendations("user", summary, patterns)

    assert recommendations == [
        "High volume of user changes detected - consider reviewing data quality",
        "1 critical user changes require immediate attention",
        "1 user deletions detected - verify these are intentional",
    ]
    assert model.recommendations("class", summarize_records([]), []) == [
        "No changes detected for class entities"
    ]
