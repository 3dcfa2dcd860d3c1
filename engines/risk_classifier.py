"""Risk tiering with hysteresis.

Scores are mapped to ``low``/``medium``/``high`` risk. Once a student has a
tier, that tier is kept while the score stays within the tier's band widened
by the hysteresis margin on both sides, so single noisy events do not make
the tier flap.
"""

from __future__ import annotations

import logging
import statistics
from datetime import datetime, timezone
from typing import Dict, Mapping, Optional, Tuple

from engine_config import EngineConfig
from engines.models import MetricPrediction, RiskAssessment, SubjectMetrics

_LOGGER = logging.getLogger(__name__)

IMPROVING = "improving"
STABLE = "stable"
DECLINING = "declining"


class RiskClassifier:
    def __init__(self, config: EngineConfig) -> None:
        self.config = config

    # ----- scoring -----------------------------------------------------
    def weighted_score(
        self,
        accuracy: float,
        engagement: float,
        progress: float,
        attendance: float,
    ) -> float:
        weights = self.config.risk.weights
        total = (
            weights.accuracy * accuracy
            + weights.engagement * engagement
            + weights.progress * progress
            + weights.attendance * attendance
        )
        return total / weights.total()

    def subject_score(self, metrics: SubjectMetrics, attendance: Optional[float] = None) -> float:
        """Weighted overall score for one subject; completion stands in for missing attendance."""

        presence = attendance if attendance is not None else metrics.completion
        return self.weighted_score(
            metrics.accuracy.value,
            metrics.engagement.value,
            metrics.progress.value,
            presence,
        )

    def projected_subject_score(
        self,
        metrics: SubjectMetrics,
        predictions: Mapping[str, MetricPrediction],
        attendance: Optional[float] = None,
    ) -> float:
        presence = attendance if attendance is not None else metrics.completion
        return self.weighted_score(
            predictions["accuracy"].predicted,
            predictions["engagement"].predicted,
            predictions["progress"].predicted,
            presence,
        )

    def trend_direction(self, delta: float) -> str:
        epsilon = self.config.risk.trend_epsilon
        if delta <= -epsilon:
            return DECLINING
        if delta >= epsilon:
            return IMPROVING
        return STABLE

    # ----- tiering -----------------------------------------------------
    def _bands(self) -> Dict[str, Tuple[float, float]]:
        cfg = self.config.risk
        return {
            "low": (cfg.low_threshold, float("inf")),
            "medium": (cfg.medium_threshold, cfg.low_threshold),
            "high": (float("-inf"), cfg.medium_threshold),
        }

    def raw_tier(self, score: float) -> str:
        cfg = self.config.risk
        if score >= cfg.low_threshold:
            return "low"
        if score >= cfg.medium_threshold:
            return "medium"
        return "high"

    def classify(self, score: float, trend: str = STABLE, previous: Optional[str] = None) -> str:
        """Return the tier for ``score`` given the trend and the previous tier.

        The previous tier is sticky inside its band widened by the margin. A
        declining trend turns a borderline medium, one scoring below the
        medium threshold plus the margin, into high. An improving trend never
        upgrades on its own.
        """

        cfg = self.config.risk
        margin = cfg.hysteresis_margin
        tier = self.raw_tier(score)
        if previous in self._bands():
            lower, upper = self._bands()[previous]
            if lower - margin <= score < upper + margin:
                tier = previous

        if tier == "medium" and trend == DECLINING and score < cfg.medium_threshold + margin:
            tier = "high"
        return tier

    def assess(
        self,
        student_id: str,
        metrics: Mapping[str, SubjectMetrics],
        predictions: Mapping[str, Mapping[str, MetricPrediction]],
        previous: Optional[RiskAssessment] = None,
        attendance: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> RiskAssessment:
        """Build a full :class:`RiskAssessment` for one student."""

        computed_at = now or datetime.now(timezone.utc)
        previous_tier = previous.tier if previous is not None else None
        active = {subject: m for subject, m in metrics.items() if m.samples > 0}
        samples = sum(m.samples for m in active.values())

        if not active:
            tier = previous_tier or self.config.risk.default_tier
            return RiskAssessment(
                student_id=student_id,
                tier=tier,
                overall_score=None,
                trend=STABLE,
                factors={"samples": 0, "attendance": attendance},
                computed_at=computed_at,
                previous_tier=previous_tier,
                low_confidence=True,
            )

        current_scores = [self.subject_score(m, attendance) for m in active.values()]
        projected_scores = [
            self.projected_subject_score(m, predictions[subject], attendance)
            if subject in predictions
            else self.subject_score(m, attendance)
            for subject, m in active.items()
        ]
        overall = statistics.fmean(current_scores)
        projected = statistics.fmean(projected_scores)
        delta = projected - overall
        trend = self.trend_direction(delta)
        tier = self.classify(overall, trend, previous_tier)

        factors = {
            "overall_score": round(overall, 4),
            "projected_score": round(projected, 4),
            "performance_delta": round(delta, 4),
            "attendance": attendance,
            "completion": round(statistics.fmean(m.completion for m in active.values()), 4),
            "engagement": round(statistics.fmean(m.engagement.value for m in active.values()), 4),
            "accuracy": round(statistics.fmean(m.accuracy.value for m in active.values()), 4),
            "progress": round(statistics.fmean(m.progress.value for m in active.values()), 4),
            "samples": samples,
        }
        if previous_tier is not None and previous_tier != tier:
            _LOGGER.info(
                "Risk tier for %s moved %s -> %s (score %.2f, trend %s)",
                student_id, previous_tier, tier, overall, trend,
            )
        return RiskAssessment(
            student_id=student_id,
            tier=tier,
            overall_score=round(overall, 4),
            trend=trend,
            factors=factors,
            computed_at=computed_at,
            previous_tier=previous_tier,
            low_confidence=samples < self.config.risk.min_samples,
        )
