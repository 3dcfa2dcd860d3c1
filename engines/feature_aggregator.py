"""Windowed feature aggregation over graded interactions.

Every call recomputes :class:`SubjectMetrics` from the complete history window
that is passed in. There are no running accumulators carried between calls,
so the same window always yields the same metrics.
"""

from __future__ import annotations

import statistics
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, List, Optional, Sequence

from engine_config import EngineConfig
from engines.models import METRIC_NAMES, MetricValue, PerformanceSnapshot, SubjectMetrics, clamp
from engines.validation import ensure_utc


@dataclass
class AggregationResult:
    metrics: SubjectMetrics
    series: Dict[str, List[float]] = field(default_factory=dict)


def _ewma(previous: Optional[float], observation: float, decay: float) -> float:
    if previous is None:
        return observation
    return decay * observation + (1.0 - decay) * previous


def bounded_window(
    window: Sequence[PerformanceSnapshot],
    snapshot: PerformanceSnapshot,
    size: int,
) -> List[PerformanceSnapshot]:
    """Return ``window`` with ``snapshot`` appended and the oldest entries evicted."""

    updated = list(window) + [snapshot]
    if len(updated) > size:
        updated = updated[len(updated) - size:]
    return updated


class FeatureAggregator:
    """Turn a window of :class:`PerformanceSnapshot` into rolling metrics."""

    def __init__(self, config: EngineConfig) -> None:
        self.config = config

    def order(self, snapshots: Sequence[PerformanceSnapshot]) -> List[PerformanceSnapshot]:
        indexed = list(enumerate(snapshots))
        indexed.sort(key=lambda item: (ensure_utc(item[1].timestamp), item[0]))
        return [snapshot for _, snapshot in indexed]

    def compute(
        self,
        snapshots: Sequence[PerformanceSnapshot],
        curriculum_size: int,
    ) -> AggregationResult:
        """Recompute metrics and their per-event value series for a window."""

        agg = self.config.aggregation
        decay = agg.decay
        ordered = self.order(snapshots)
        series: Dict[str, List[float]] = {name: [] for name in METRIC_NAMES}
        if not ordered:
            return AggregationResult(metrics=SubjectMetrics(), series=series)

        accuracy: Optional[float] = None
        retention: Optional[float] = None
        speed: Optional[float] = None
        engagement: Optional[float] = None
        trends = {name: 0.0 for name in METRIC_NAMES}
        previous_values: Dict[str, Optional[float]] = {name: None for name in METRIC_NAMES}

        recent_times: Deque[int] = deque(maxlen=agg.speed_median_window)
        last_seen: Dict[str, datetime] = {}
        covered: set[str] = set()
        completed = 0
        previous_ts: Optional[datetime] = None
        retention_gap_seconds = agg.retention_gap_hours * 3600.0
        target_gap_hours = agg.engagement_target_gap_hours
        weights = agg.engagement_weights
        weight_total = weights.frequency + weights.completion

        for snapshot in ordered:
            ts = ensure_utc(snapshot.timestamp)
            outcome = 100.0 if snapshot.correct else 0.0
            accuracy = _ewma(accuracy, outcome, decay.accuracy)

            seen_at = last_seen.get(snapshot.topic)
            if seen_at is not None and (ts - seen_at).total_seconds() >= retention_gap_seconds:
                retention = _ewma(retention, outcome, decay.retention)
            last_seen[snapshot.topic] = ts

            recent_times.append(snapshot.response_time_ms)
            median = float(statistics.median(recent_times))
            speed_obs = 100.0 * median / (median + snapshot.response_time_ms)
            speed = _ewma(speed, speed_obs, decay.speed)

            if previous_ts is None:
                frequency = 100.0
            else:
                gap_hours = max(0.0, (ts - previous_ts).total_seconds() / 3600.0)
                frequency = 100.0 if gap_hours <= target_gap_hours else 100.0 * target_gap_hours / gap_hours
            completion_obs = 100.0 if snapshot.completed else 0.0
            engagement_obs = (weights.frequency * frequency + weights.completion * completion_obs) / weight_total
            engagement = _ewma(engagement, engagement_obs, decay.engagement)
            previous_ts = ts

            covered.add(snapshot.topic)
            if snapshot.completed:
                completed += 1
            progress = 100.0 * len(covered) / curriculum_size if curriculum_size > 0 else 0.0

            values = {
                "accuracy": clamp(accuracy),
                "speed": clamp(speed),
                "retention": clamp(retention if retention is not None else accuracy),
                "engagement": clamp(engagement),
                "progress": clamp(progress),
            }
            for name in METRIC_NAMES:
                prior = previous_values[name]
                if prior is not None:
                    trends[name] = _ewma(trends[name], values[name] - prior, agg.trend_decay)
                previous_values[name] = values[name]
                series[name].append(round(values[name], 4))

        metrics = SubjectMetrics(
            **{
                name: MetricValue(value=round(previous_values[name] or 0.0, 4), trend=round(trends[name], 4))
                for name in METRIC_NAMES
            },
            completion=round(100.0 * completed / len(ordered), 4),
            samples=len(ordered),
            last_event_at=ensure_utc(ordered[-1].timestamp),
        )
        return AggregationResult(metrics=metrics, series=series)

    def compute_by_topic(
        self,
        snapshots: Sequence[PerformanceSnapshot],
    ) -> Dict[str, AggregationResult]:
        """Topic-scoped metrics, one aggregation per topic present in the window."""

        grouped: Dict[str, List[PerformanceSnapshot]] = {}
        for snapshot in snapshots:
            grouped.setdefault(snapshot.topic, []).append(snapshot)
        return {topic: self.compute(items, curriculum_size=1) for topic, items in sorted(grouped.items())}
