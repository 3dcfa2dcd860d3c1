"""Curriculum-aligned learning gap detection."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Mapping, Optional, Sequence

from engine_config import EngineConfig
from engines.feature_aggregator import AggregationResult, FeatureAggregator
from engines.models import SEVERITY_RANK, LearningGap, PerformanceSnapshot, clamp

_RECOMMENDATION_TEXT = {
    "high": "Reteach {label} from prerequisites; mastery {mastery:.0f} is well below the {threshold:.0f} target.",
    "medium": "Schedule focused practice on {label}; mastery {mastery:.0f} against a {threshold:.0f} target.",
    "low": "Consolidate {label} with a short review; mastery {mastery:.0f} is just under {threshold:.0f}.",
}


@dataclass(frozen=True)
class TopicMastery:
    subject: str
    topic: str
    mastery: float
    samples: int
    last_practiced_at: Optional[datetime] = None


class GapDetector:
    """Compare topic mastery against curriculum thresholds and rank the shortfalls."""

    def __init__(self, config: EngineConfig, aggregator: Optional[FeatureAggregator] = None) -> None:
        self.config = config
        self.aggregator = aggregator or FeatureAggregator(config)

    def mastery(self, aggregation: AggregationResult) -> float:
        weights = self.config.gaps.mastery_weights
        total = weights.accuracy + weights.retention + weights.engagement
        metrics = aggregation.metrics
        if total <= 0:
            return metrics.accuracy.value
        score = (
            weights.accuracy * metrics.accuracy.value
            + weights.retention * metrics.retention.value
            + weights.engagement * metrics.engagement.value
        ) / total
        return round(clamp(score), 4)

    def severity(self, deficit: float) -> Optional[str]:
        cfg = self.config.gaps
        if deficit <= 0:
            return None
        if deficit >= cfg.high_deficit:
            return "high"
        if deficit >= cfg.medium_deficit:
            return "medium"
        return "low"

    def topic_mastery(
        self,
        windows: Mapping[str, Sequence[PerformanceSnapshot]],
    ) -> List[TopicMastery]:
        """Topic-scoped mastery estimates for every topic practised in ``windows``."""

        entries: List[TopicMastery] = []
        for subject in sorted(windows):
            for topic, aggregation in self.aggregator.compute_by_topic(windows[subject]).items():
                entries.append(
                    TopicMastery(
                        subject=subject,
                        topic=topic,
                        mastery=self.mastery(aggregation),
                        samples=aggregation.metrics.samples,
                        last_practiced_at=aggregation.metrics.last_event_at,
                    )
                )
        return entries

    def detect_from_mastery(
        self,
        student_id: str,
        key_stage: str,
        entries: Iterable[TopicMastery],
        now: Optional[datetime] = None,
    ) -> List[LearningGap]:
        cfg = self.config.gaps
        detected_at = now or datetime.now(timezone.utc)
        gaps: List[LearningGap] = []
        for entry in entries:
            if entry.samples < cfg.min_topic_samples:
                continue
            threshold = self.config.mastery_threshold(entry.subject, key_stage, entry.topic)
            severity = self.severity(threshold - entry.mastery)
            if severity is None:
                continue
            label = self.config.topic_label(entry.subject, key_stage, entry.topic)
            gaps.append(
                LearningGap(
                    student_id=student_id,
                    subject=entry.subject,
                    topic=entry.topic,
                    severity=severity,
                    mastery=entry.mastery,
                    threshold=threshold,
                    recommendation=_RECOMMENDATION_TEXT[severity].format(
                        label=label, mastery=entry.mastery, threshold=threshold
                    ),
                    detected_at=detected_at,
                    last_practiced_at=entry.last_practiced_at,
                )
            )
        return self.rank(gaps)

    def rank(self, gaps: Iterable[LearningGap]) -> List[LearningGap]:
        """Most severe first, then most recently practised, capped at ``max_gaps``."""

        ordered = sorted(
            gaps,
            key=lambda gap: (
                -SEVERITY_RANK[gap.severity],
                -gap.last_practiced_at.timestamp() if gap.last_practiced_at else float("inf"),
                -gap.deficit,
                gap.subject,
                gap.topic,
            ),
        )
        return ordered[: self.config.gaps.max_gaps]

    def detect(
        self,
        student_id: str,
        key_stage: str,
        windows: Mapping[str, Sequence[PerformanceSnapshot]],
        now: Optional[datetime] = None,
    ) -> List[LearningGap]:
        return self.detect_from_mastery(student_id, key_stage, self.topic_mastery(windows), now=now)
