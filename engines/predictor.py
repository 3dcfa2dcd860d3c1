"""Near-term performance projection from aggregated metrics.

Projection extrapolates the EWMA trend linearly over a fixed horizon of
interactions. Sparse histories do not raise: they come back as the current
value with ``low_confidence`` set and the widest band.
"""

from __future__ import annotations

import math
import statistics
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from engine_config import EngineConfig
from engines.feature_aggregator import AggregationResult
from engines.models import METRIC_NAMES, MetricPrediction, clamp


@dataclass
class ForecastPoint:
    period: int
    predicted: float
    lower: float
    upper: float


class PerformancePredictor:
    def __init__(self, config: EngineConfig) -> None:
        self.config = config

    def _band(self, recent: Sequence[float], samples: int, steps: int) -> float:
        cfg = self.config.prediction
        if len(recent) < 2:
            return cfg.max_band
        deviation = statistics.pstdev(recent)
        half_width = cfg.z_score * deviation * math.sqrt(1.0 + steps / samples)
        if samples < cfg.full_confidence_samples:
            half_width *= math.sqrt(cfg.full_confidence_samples / samples)
        return min(cfg.max_band, half_width)

    def _confidence(self, samples: int, half_width: float) -> float:
        cfg = self.config.prediction
        coverage = samples / (samples + cfg.full_confidence_samples)
        tightness = 1.0 - half_width / cfg.max_band
        return round(max(0.0, min(1.0, 2.0 * coverage * tightness)), 4)

    def predict_metric(
        self,
        current: float,
        trend: float,
        recent: Sequence[float],
        samples: int,
        horizon: Optional[int] = None,
    ) -> MetricPrediction:
        cfg = self.config.prediction
        steps = horizon if horizon is not None else cfg.horizon

        if samples < cfg.min_samples:
            return MetricPrediction(
                current=round(current, 4),
                predicted=round(current, 4),
                lower=round(clamp(current - cfg.max_band), 4),
                upper=round(clamp(current + cfg.max_band), 4),
                confidence=0.0,
                low_confidence=True,
                samples=samples,
            )

        window = list(recent)[-cfg.variance_window:]
        half_width = self._band(window, samples, steps)
        predicted = clamp(current + trend * steps)
        return MetricPrediction(
            current=round(current, 4),
            predicted=round(predicted, 4),
            lower=round(clamp(predicted - half_width), 4),
            upper=round(clamp(predicted + half_width), 4),
            confidence=self._confidence(samples, half_width),
            low_confidence=False,
            samples=samples,
        )

    def predict(
        self,
        aggregation: AggregationResult,
        horizon: Optional[int] = None,
    ) -> Dict[str, MetricPrediction]:
        """Project every metric of one subject."""

        metrics = aggregation.metrics
        return {
            name: self.predict_metric(
                current=metrics.metric(name).value,
                trend=metrics.metric(name).trend,
                recent=aggregation.series.get(name, []),
                samples=metrics.samples,
                horizon=horizon,
            )
            for name in METRIC_NAMES
        }

    def forecast(
        self,
        aggregation: AggregationResult,
        metric: str,
        periods: int,
        period_length: Optional[int] = None,
    ) -> List[ForecastPoint]:
        """Projected series with confidence bands, one point per future period."""

        if periods <= 0:
            raise ValueError("periods must be positive")
        if metric not in METRIC_NAMES:
            raise ValueError(f"Unknown metric: {metric}")
        step = period_length if period_length is not None else self.config.prediction.horizon
        points: List[ForecastPoint] = []
        for period in range(1, periods + 1):
            prediction = self.predict_metric(
                current=aggregation.metrics.metric(metric).value,
                trend=aggregation.metrics.metric(metric).trend,
                recent=aggregation.series.get(metric, []),
                samples=aggregation.metrics.samples,
                horizon=step * period,
            )
            points.append(
                ForecastPoint(
                    period=period,
                    predicted=prediction.predicted,
                    lower=prediction.lower,
                    upper=prediction.upper,
                )
            )
        return points
