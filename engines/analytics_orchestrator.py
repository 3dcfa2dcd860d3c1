"""Engine facade: ingestion, on-demand queries and batch recompute.

The ingestion path is synchronous and holds a per-(student, subject) lock
while the history window, metrics and difficulty state are updated. Query
and recompute paths read the stored windows and replace a student's derived
outputs wholesale in a single transaction.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

import db
from engine_config import EngineConfig, load_engine_config
from engines.alerts import ProgressAlertMonitor
from engines.batch_recompute import BatchRecomputeRunner, CycleReport
from engines.caching import KeyedLockRegistry
from engines.difficulty_manager import AdaptiveDifficultyController
from engines.feature_aggregator import AggregationResult, FeatureAggregator, bounded_window
from engines.gap_detector import GapDetector
from engines.intervention_system import InterventionRecommender
from engines.models import (
    METRIC_NAMES,
    DifficultyAdjustment,
    DifficultyState,
    Intervention,
    LearningGap,
    MetricPrediction,
    PerformanceSnapshot,
    ProgressAlert,
    RecommendationSet,
    RiskAssessment,
    StalenessWarning,
    StudentProfile,
    SubjectMetrics,
)
from engines.predictor import ForecastPoint, PerformancePredictor
from engines.risk_classifier import RiskClassifier
from engines.validation import (
    InvalidEventError,
    UnknownInterventionError,
    UnknownStudentError,
    ValidationError,
    ensure_utc,
    validate_attendance,
    validate_event,
    validate_profile,
    validate_status_transition,
)

logger = logging.getLogger(__name__)


def _log_json(event: str, payload: Dict[str, Any]) -> None:
    """Emit one structured engine event as a JSON log line."""

    record = {"event": event, **payload}
    logger.info(json.dumps(record, ensure_ascii=False, sort_keys=True, default=str))


@dataclass
class ServedResult:
    """A stored result plus when it was computed and whether it is stale."""

    value: Any
    computed_at: Optional[datetime]
    staleness: Optional[StalenessWarning] = None

    @property
    def stale(self) -> bool:
        return self.staleness is not None

    def to_dict(self) -> Dict[str, Any]:
        value = self.value
        if hasattr(value, "to_dict"):
            data = value.to_dict()
        elif isinstance(value, list):
            data = [item.to_dict() if hasattr(item, "to_dict") else item for item in value]
        else:
            data = value
        return {
            "data": data,
            "computed_at": self.computed_at.isoformat() if self.computed_at else None,
            "stale": self.stale,
            "staleness": self.staleness.to_dict() if self.staleness else None,
        }


@dataclass
class IngestionResult:
    accepted: bool
    student_id: str
    subject: str
    difficulty: DifficultyState
    changed: bool
    metrics: SubjectMetrics
    adjustment: Optional[DifficultyAdjustment] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "student_id": self.student_id,
            "subject": self.subject,
            "difficulty_level": self.difficulty.level,
            "changed": self.changed,
            "pacing": self.difficulty.pacing,
            "pace_modifier": self.difficulty.pace_modifier,
            "difficulty": self.difficulty.to_dict(),
            "metrics": self.metrics.to_dict(),
            "adjustment": self.adjustment.to_dict() if self.adjustment else None,
        }


@dataclass
class StudentAnalytics:
    """Outputs of one recompute for one student."""

    risk: RiskAssessment
    gaps: List[LearningGap]
    recommendations: RecommendationSet
    alerts: List[ProgressAlert] = field(default_factory=list)


class AnalyticsEngine:
    """Entry point used by the HTTP layer and by batch jobs."""

    def __init__(self, config: Optional[EngineConfig] = None) -> None:
        self.config = config or load_engine_config()
        self.aggregator = FeatureAggregator(self.config)
        self.predictor = PerformancePredictor(self.config)
        self.classifier = RiskClassifier(self.config)
        self.gap_detector = GapDetector(self.config, self.aggregator)
        self.recommender = InterventionRecommender(self.config)
        self.difficulty = AdaptiveDifficultyController(self.config)
        self.alert_monitor = ProgressAlertMonitor(self.config)
        self.batch = BatchRecomputeRunner(
            self.recompute_student,
            self.config.batch,
            on_failure=db.record_recompute_failure,
        )
        self._locks = KeyedLockRegistry()

    # ----- helpers -----------------------------------------------------
    def _profile(self, student_id: str) -> StudentProfile:
        profile = db.get_student(student_id)
        if profile is None:
            raise UnknownStudentError(f"Unknown student: {student_id}")
        return profile

    @staticmethod
    def _require_subject(profile: StudentProfile, subject: str) -> None:
        if subject not in profile.subjects:
            raise ValidationError(f"Unknown subject {subject!r} for student {profile.student_id}")

    def _aggregate(self, profile: StudentProfile, subject: str, window: Sequence[PerformanceSnapshot]) -> AggregationResult:
        return self.aggregator.compute(window, self.config.curriculum_size(subject, profile.key_stage))

    def _serve(self, value: Any, computed_at: Optional[datetime], now: Optional[datetime] = None) -> ServedResult:
        if computed_at is None:
            return ServedResult(value=value, computed_at=None)
        moment = now or datetime.now(timezone.utc)
        age = (moment - ensure_utc(computed_at)).total_seconds()
        warning = None
        if age > self.config.freshness_sla_seconds:
            warning = StalenessWarning(
                computed_at=computed_at,
                age_seconds=age,
                sla_seconds=self.config.freshness_sla_seconds,
            )
        return ServedResult(value=value, computed_at=computed_at, staleness=warning)

    # ----- registration ------------------------------------------------
    def register_student(
        self,
        student_id: str,
        key_stage: str,
        subjects: List[str],
        attendance: Optional[float] = None,
    ) -> StudentProfile:
        validate_profile(self.config, student_id, key_stage, subjects, attendance)
        profile = StudentProfile(
            student_id=student_id,
            key_stage=key_stage,
            subjects=list(subjects),
            attendance=attendance,
            created_at=datetime.now(timezone.utc),
        )
        db.upsert_student(profile)
        logger.info("Registered student %s (%s: %s)", student_id, key_stage, ", ".join(subjects))
        return self._profile(student_id)

    def record_attendance(self, student_id: str, attendance: Optional[float]) -> StudentProfile:
        validate_attendance(attendance)
        self._profile(student_id)
        db.set_attendance(student_id, attendance)
        return self._profile(student_id)

    def assign_cohort(self, cohort_id: str, student_ids: Sequence[str]) -> List[str]:
        if not cohort_id:
            raise ValidationError("cohort_id must be a non-empty string")
        for student_id in student_ids:
            self._profile(student_id)
        db.add_cohort_members(cohort_id, list(student_ids))
        return db.list_cohort_members(cohort_id)

    # ----- ingestion ---------------------------------------------------
    def ingest(self, event: PerformanceSnapshot, now: Optional[datetime] = None) -> IngestionResult:
        """Validate one interaction, then update metrics and difficulty state.

        A rejected event leaves every piece of stored state untouched.
        """

        moment = now or datetime.now(timezone.utc)
        profile = self._profile(event.student_id)
        try:
            validate_event(self.config, profile, event, now=moment)
        except InvalidEventError as exc:
            _log_json(
                "event_rejected",
                {"student_id": event.student_id, "subject": event.subject, "topic": event.topic, "error": str(exc)},
            )
            raise

        with self._locks.hold((event.student_id, event.subject)):
            window = bounded_window(
                db.list_snapshots(event.student_id, event.subject),
                event,
                self.config.window_size,
            )
            aggregation = self._aggregate(profile, event.subject, window)
            state = db.get_difficulty_state(event.student_id, event.subject)
            if state is None:
                state = self.difficulty.initial_state(event.student_id, event.subject, now=moment)
            step = self.difficulty.step(state, event.correct, event.response_time_ms, now=moment)
            db.save_ingestion(event, self.config.window_size, aggregation.metrics, step.state, step.adjustment)

        if step.changed:
            _log_json(
                "difficulty_adjusted",
                {
                    "student_id": event.student_id,
                    "subject": event.subject,
                    "previous_level": step.previous_level,
                    "new_level": step.state.level,
                    "signal": step.signal,
                },
            )
        return IngestionResult(
            accepted=True,
            student_id=event.student_id,
            subject=event.subject,
            difficulty=step.state,
            changed=step.changed,
            metrics=aggregation.metrics,
            adjustment=step.adjustment,
        )

    # ----- predictions -------------------------------------------------
    def _overall_prediction(
        self,
        metrics: SubjectMetrics,
        predictions: Mapping[str, MetricPrediction],
        attendance: Optional[float],
    ) -> Dict[str, Any]:
        presence = attendance if attendance is not None else metrics.completion

        def weighted(attr: str) -> float:
            return round(
                self.classifier.weighted_score(
                    getattr(predictions["accuracy"], attr),
                    getattr(predictions["engagement"], attr),
                    getattr(predictions["progress"], attr),
                    presence,
                ),
                4,
            )

        used = [predictions[name] for name in ("accuracy", "engagement", "progress")]
        return {
            "current": weighted("current"),
            "predicted": weighted("predicted"),
            "lower": weighted("lower"),
            "upper": weighted("upper"),
            "confidence": min(p.confidence for p in used),
            "low_confidence": any(p.low_confidence for p in used),
            "samples": metrics.samples,
        }

    def get_predictions(self, student_id: str) -> Dict[str, Dict[str, Any]]:
        """Per subject: one projection per metric plus a weighted ``overall`` entry."""

        profile = self._profile(student_id)
        windows = db.list_snapshot_windows(student_id)
        result: Dict[str, Dict[str, Any]] = {}
        for subject in profile.subjects:
            aggregation = self._aggregate(profile, subject, windows.get(subject, []))
            predictions = self.predictor.predict(aggregation)
            entry: Dict[str, Any] = {name: predictions[name].to_dict() for name in METRIC_NAMES}
            entry["overall"] = self._overall_prediction(aggregation.metrics, predictions, profile.attendance)
            result[subject] = entry
        return result

    def get_forecast(self, student_id: str, subject: str, metric: str, periods: int) -> List[ForecastPoint]:
        profile = self._profile(student_id)
        self._require_subject(profile, subject)
        aggregation = self._aggregate(profile, subject, db.list_snapshots(student_id, subject))
        try:
            return self.predictor.forecast(aggregation, metric, periods)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    # ----- recompute ---------------------------------------------------
    def recompute_student(self, student_id: str, now: Optional[datetime] = None) -> StudentAnalytics:
        """Recompute risk, gaps, recommendations and alerts for one student."""

        moment = now or datetime.now(timezone.utc)
        with self._locks.hold(("recompute", student_id)):
            profile = self._profile(student_id)
            stored = db.list_snapshot_windows(student_id)
            windows = {subject: stored.get(subject, []) for subject in profile.subjects}
            previous = db.get_current_risk(student_id)

            metrics: Dict[str, SubjectMetrics] = {}
            predictions: Dict[str, Dict[str, MetricPrediction]] = {}
            for subject, window in windows.items():
                aggregation = self._aggregate(profile, subject, window)
                metrics[subject] = aggregation.metrics
                predictions[subject] = self.predictor.predict(aggregation)

            risk = self.classifier.assess(
                student_id,
                metrics,
                predictions,
                previous=previous,
                attendance=profile.attendance,
                now=moment,
            )
            # Stored with the assessment so the next recompute only alerts on new drops.
            risk.factors["performance_drops"] = self.alert_monitor.dropping_subjects(predictions)
            gaps = self.gap_detector.detect(student_id, profile.key_stage, windows, now=moment)
            recommendations = self.recommender.recommend(student_id, gaps, risk.tier, now=moment)
            alerts = self.alert_monitor.evaluate(student_id, previous, risk, predictions, now=moment)
            db.replace_student_outputs(student_id, risk, gaps, recommendations.interventions, alerts)

        _log_json(
            "student_recomputed",
            {
                "student_id": student_id,
                "tier": risk.tier,
                "previous_tier": risk.previous_tier,
                "gaps": len(gaps),
                "interventions": len(recommendations.interventions),
                "alerts": [alert.alert_type for alert in alerts],
            },
        )
        return StudentAnalytics(risk=risk, gaps=gaps, recommendations=recommendations, alerts=alerts)

    def run_batch_cycle(self, student_ids: Optional[Sequence[str]] = None) -> CycleReport:
        ids = list(student_ids) if student_ids is not None else db.list_student_ids()
        return self.batch.run_cycle(ids)

    def start_batch(self, interval_seconds: float) -> None:
        self.batch.start(db.list_student_ids, interval_seconds)

    def stop_batch(self) -> None:
        self.batch.stop()

    # ----- risk --------------------------------------------------------
    def get_risk(self, student_id: str, refresh: bool = False, now: Optional[datetime] = None) -> ServedResult:
        self._profile(student_id)
        risk = None if refresh else db.get_current_risk(student_id)
        if risk is None:
            risk = self.recompute_student(student_id, now=now).risk
        return self._serve(risk, risk.computed_at, now)

    def get_cohort_risk(self, cohort_id: str, now: Optional[datetime] = None) -> Dict[str, ServedResult]:
        return {student_id: self.get_risk(student_id, now=now) for student_id in db.list_cohort_members(cohort_id)}

    def get_risk_history(self, student_id: str, limit: int = 50) -> List[RiskAssessment]:
        self._profile(student_id)
        return db.list_risk_history(student_id, limit)

    # ----- gaps --------------------------------------------------------
    def get_gaps(self, student_id: str, refresh: bool = False, now: Optional[datetime] = None) -> ServedResult:
        self._profile(student_id)
        current = None if refresh else db.get_current_risk(student_id)
        if current is None:
            analytics = self.recompute_student(student_id, now=now)
            return self._serve(analytics.gaps, analytics.risk.computed_at, now)
        return self._serve(db.get_current_gaps(student_id), current.computed_at, now)

    def get_gap_history(self, student_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        self._profile(student_id)
        return [
            {"computed_at": computed_at.isoformat(), "gaps": [gap.to_dict() for gap in gaps]}
            for computed_at, gaps in db.list_gap_history(student_id, limit)
        ]

    # ----- recommendations ---------------------------------------------
    def get_recommendations(self, student_id: str, refresh: bool = False, now: Optional[datetime] = None) -> ServedResult:
        self._profile(student_id)
        current = None if refresh else db.get_current_risk(student_id)
        if current is None:
            current = self.recompute_student(student_id, now=now).risk
        interventions = db.get_current_interventions("student", student_id)
        covered = {(item.subject, item.topic) for item in interventions}
        unaddressed = [
            gap for gap in db.get_current_gaps(student_id) if (gap.subject, gap.topic) not in covered
        ]
        recommendations = RecommendationSet(
            target_id=student_id,
            interventions=interventions,
            unaddressed_gaps=unaddressed,
        )
        return self._serve(recommendations, current.computed_at, now)

    def get_cohort_recommendations(self, cohort_id: str, now: Optional[datetime] = None) -> RecommendationSet:
        """Group interventions for gaps shared across a cohort's members."""

        members: Dict[str, Any] = {}
        for student_id in db.list_cohort_members(cohort_id):
            risk = self.get_risk(student_id, now=now).value
            members[student_id] = (db.get_current_gaps(student_id), risk.tier)
        recommendations = self.recommender.recommend_cohort(cohort_id, members, now=now)
        db.replace_cohort_interventions(cohort_id, recommendations.interventions)
        stored = {item.intervention_id: item for item in db.get_current_interventions("cohort", cohort_id)}
        for item in recommendations.interventions:
            if item.intervention_id in stored:
                item.status = stored[item.intervention_id].status
        return recommendations

    def update_intervention_status(self, intervention_id: str, status: str) -> Intervention:
        intervention = db.get_intervention(intervention_id)
        if intervention is None:
            raise UnknownInterventionError(f"Unknown intervention: {intervention_id}")
        validate_status_transition(intervention.status, status)
        db.update_intervention_status(intervention_id, status)
        logger.info("Intervention %s moved %s -> %s", intervention_id, intervention.status, status)
        intervention.status = status
        return intervention

    # ----- difficulty --------------------------------------------------
    def get_difficulty_state(self, student_id: str, subject: str) -> DifficultyState:
        profile = self._profile(student_id)
        self._require_subject(profile, subject)
        state = db.get_difficulty_state(student_id, subject)
        return state or self.difficulty.initial_state(student_id, subject)

    def configure_difficulty(
        self,
        student_id: str,
        subject: str,
        adaptation_speed: Optional[int] = None,
        difficulty_adjustment: Optional[int] = None,
        level: Optional[int] = None,
    ) -> DifficultyState:
        profile = self._profile(student_id)
        self._require_subject(profile, subject)
        with self._locks.hold((student_id, subject)):
            state = db.get_difficulty_state(student_id, subject)
            if state is None:
                state = self.difficulty.initial_state(student_id, subject)
            updated = self.difficulty.configure(
                state,
                adaptation_speed=adaptation_speed,
                difficulty_adjustment=difficulty_adjustment,
                level=level,
            )
            db.save_difficulty_state(updated)
        return updated

    def list_difficulty_adjustments(self, student_id: str, subject: str, limit: int = 50) -> List[DifficultyAdjustment]:
        profile = self._profile(student_id)
        self._require_subject(profile, subject)
        return db.list_difficulty_adjustments(student_id, subject, limit)

    # ----- alerts ------------------------------------------------------
    def get_alerts(self, student_id: str, limit: int = 50) -> List[ProgressAlert]:
        self._profile(student_id)
        return db.list_alerts(student_id, limit)
