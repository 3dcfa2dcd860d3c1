"""Progress alerts raised after a student's analytics are recomputed."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Mapping, Optional

from engine_config import EngineConfig
from engines.models import TIER_ORDER, MetricPrediction, ProgressAlert, RiskAssessment


class ProgressAlertMonitor:
    """Compare consecutive risk assessments and projections.

    Emits ``risk_escalation`` when the tier worsens, ``achievement`` when it
    improves and ``performance_drop`` for any subject whose projected accuracy
    falls by more than ``alerts.performance_drop_points``. A subject already
    listed under ``performance_drops`` in the previous assessment's factors
    is not reported again until it recovers.
    """

    def __init__(self, config: EngineConfig) -> None:
        self.config = config

    def evaluate(
        self,
        student_id: str,
        previous: Optional[RiskAssessment],
        current: RiskAssessment,
        subject_predictions: Mapping[str, Mapping[str, MetricPrediction]],
        now: Optional[datetime] = None,
    ) -> List[ProgressAlert]:
        created_at = now or datetime.now(timezone.utc)
        alerts: List[ProgressAlert] = []

        if previous is not None and previous.tier != current.tier:
            before = TIER_ORDER.index(previous.tier)
            after = TIER_ORDER.index(current.tier)
            if after < before:
                alerts.append(
                    ProgressAlert(
                        student_id=student_id,
                        alert_type="risk_escalation",
                        severity="high" if current.tier == "high" else "medium",
                        message=f"Risk tier rose from {previous.tier} to {current.tier}",
                        created_at=created_at,
                    )
                )
            else:
                alerts.append(
                    ProgressAlert(
                        student_id=student_id,
                        alert_type="achievement",
                        severity="low",
                        message=f"Risk tier improved from {previous.tier} to {current.tier}",
                        created_at=created_at,
                    )
                )

        threshold = self.config.alerts.performance_drop_points
        already_flagged = set(previous.factors.get("performance_drops") or []) if previous is not None else set()
        for subject in self.dropping_subjects(subject_predictions):
            if subject in already_flagged:
                continue
            accuracy = subject_predictions[subject]["accuracy"]
            drop = accuracy.current - accuracy.predicted
            alerts.append(
                ProgressAlert(
                    student_id=student_id,
                    alert_type="performance_drop",
                    severity="high" if drop > 2 * threshold else "medium",
                    message=(
                        f"Projected {subject} accuracy falls {drop:.1f} points "
                        f"to {accuracy.predicted:.1f}"
                    ),
                    created_at=created_at,
                    subject=subject,
                )
            )
        return alerts

    def dropping_subjects(self, subject_predictions: Mapping[str, Mapping[str, MetricPrediction]]) -> List[str]:
        """Subjects whose confident accuracy projection falls past the threshold."""

        threshold = self.config.alerts.performance_drop_points
        subjects: List[str] = []
        for subject in sorted(subject_predictions):
            accuracy = subject_predictions[subject].get("accuracy")
            if accuracy is None or accuracy.low_confidence:
                continue
            if accuracy.current - accuracy.predicted > threshold:
                subjects.append(subject)
        return subjects
