"""Tests for windowed feature aggregation."""

from datetime import datetime, timedelta, timezone

import pytest

from engines.feature_aggregator import FeatureAggregator, bounded_window
from engines.models import METRIC_NAMES, PerformanceSnapshot

BASE = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


def make_snapshot(
    offset_hours: float,
    correct: bool = True,
    response_time_ms: int = 20000,
    topic: str = "fractions",
    completed: bool = True,
) -> PerformanceSnapshot:
    return PerformanceSnapshot(
        student_id="s1",
        subject="maths",
        topic=topic,
        timestamp=BASE + timedelta(hours=offset_hours),
        correct=correct,
        response_time_ms=response_time_ms,
        completed=completed,
    )


def test_empty_window_yields_zero_metrics(engine_config):
    result = FeatureAggregator(engine_config).compute([], curriculum_size=9)
    assert result.metrics.samples == 0
    assert result.metrics.last_event_at is None
    for name in METRIC_NAMES:
        assert result.metrics.metric(name).value == 0.0
        assert result.series[name] == []


def test_accuracy_is_ewma_of_correctness(engine_config):
    window = [make_snapshot(0, True), make_snapshot(1, False)]
    metrics = FeatureAggregator(engine_config).compute(window, curriculum_size=9).metrics
    # 0.2 * 0 + 0.8 * 100
    assert metrics.accuracy.value == pytest.approx(80.0)
    # First delta of -20 smoothed from zero with trend decay 0.3
    assert metrics.accuracy.trend == pytest.approx(-6.0)
    assert metrics.samples == 2


def test_retention_counts_only_spaced_revisits(engine_config):
    aggregator = FeatureAggregator(engine_config)
    same_day = [make_snapshot(0, True), make_snapshot(2, False)]
    assert aggregator.compute(same_day, 9).metrics.retention.value == pytest.approx(80.0)

    spaced = [make_snapshot(0, True), make_snapshot(25, False)]
    assert aggregator.compute(spaced, 9).metrics.retention.value == pytest.approx(0.0)


def test_progress_speed_engagement_and_completion(engine_config):
    window = [
        make_snapshot(0, topic="fractions", response_time_ms=10000),
        make_snapshot(1, topic="algebra", response_time_ms=10000),
        make_snapshot(2, topic="fractions", response_time_ms=10000, completed=False),
    ]
    metrics = FeatureAggregator(engine_config).compute(window, curriculum_size=9).metrics
    assert metrics.progress.value == pytest.approx(round(200.0 / 9, 4))
    # Constant response times sit exactly on the rolling median.
    assert metrics.speed.value == pytest.approx(50.0)
    assert metrics.completion == pytest.approx(66.6667)
    assert metrics.engagement.value < 100.0
    assert metrics.last_event_at == BASE + timedelta(hours=2)


def test_metrics_stay_within_bounds(engine_config):
    window = [
        make_snapshot(
            i * 7.5,
            correct=(i * 7) % 3 != 0,
            response_time_ms=1000 + (i * 3517) % 90000,
            topic=("fractions", "algebra", "statistics", "measurement")[i % 4],
            completed=i % 5 != 0,
        )
        for i in range(60)
    ]
    result = FeatureAggregator(engine_config).compute(window, curriculum_size=9)
    for name in METRIC_NAMES:
        assert 0.0 <= result.metrics.metric(name).value <= 100.0
        assert all(0.0 <= value <= 100.0 for value in result.series[name])
        assert len(result.series[name]) == 60


def test_recompute_is_deterministic_and_order_independent(engine_config):
    aggregator = FeatureAggregator(engine_config)
    window = [make_snapshot(i, correct=i % 2 == 0, response_time_ms=5000 + i * 100) for i in range(12)]
    first = aggregator.compute(window, 9)
    second = aggregator.compute(list(window), 9)
    shuffled = aggregator.compute(list(reversed(window)), 9)
    assert first.metrics == second.metrics
    assert first.metrics == shuffled.metrics
    assert first.series == shuffled.series


def test_bounded_window_evicts_oldest():
    window = [make_snapshot(i) for i in range(3)]
    newest = make_snapshot(3)
    updated = bounded_window(window, newest, size=3)
    assert len(updated) == 3
    assert updated[0] == window[1]
    assert updated[-1] == newest
    # The input window is left untouched.
    assert len(window) == 3


def test_compute_by_topic_scopes_each_topic(engine_config):
    window = [
        make_snapshot(0, True, topic="fractions"),
        make_snapshot(1, False, topic="algebra"),
        make_snapshot(2, True, topic="fractions"),
    ]
    by_topic = FeatureAggregator(engine_config).compute_by_topic(window)
    assert list(by_topic) == ["algebra", "fractions"]
    assert by_topic["fractions"].metrics.samples == 2
    assert by_topic["fractions"].metrics.accuracy.value == pytest.approx(100.0)
    assert by_topic["algebra"].metrics.accuracy.value == pytest.approx(0.0)
    assert by_topic["algebra"].metrics.progress.value == pytest.approx(100.0)
