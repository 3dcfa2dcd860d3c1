"""Test cases for db operations."""

from datetime import datetime, timedelta, timezone

import db
from engines.batch_recompute import RecomputeFailure
from engines.models import (
    DifficultyAdjustment,
    DifficultyState,
    Intervention,
    LearningGap,
    MetricValue,
    PerformanceSnapshot,
    ProgressAlert,
    RiskAssessment,
    StudentProfile,
    SubjectMetrics,
)

NOW = datetime(2025, 4, 7, 9, 0, tzinfo=timezone.utc)


def _snapshot(i: int, subject: str = "maths") -> PerformanceSnapshot:
    return PerformanceSnapshot(
        student_id="s1",
        subject=subject,
        topic="fractions",
        timestamp=NOW + timedelta(minutes=i),
        correct=i % 2 == 0,
        response_time_ms=10000 + i,
    )


def _state(level: int = 5) -> DifficultyState:
    return DifficultyState(
        student_id="s1",
        subject="maths",
        level=level,
        adaptation_speed=3,
        difficulty_adjustment=5,
        buffer=[(1.0, 12000)],
        updated_at=NOW,
    )


def _risk(tier: str, computed_at: datetime) -> RiskAssessment:
    return RiskAssessment(
        student_id="s1",
        tier=tier,
        overall_score=48.0,
        trend="declining",
        factors={"accuracy": 45.0},
        computed_at=computed_at,
    )


def _gap(topic: str, computed_at: datetime) -> LearningGap:
    return LearningGap(
        student_id="s1",
        subject="maths",
        topic=topic,
        severity="high",
        mastery=52.0,
        threshold=80.0,
        recommendation="Revisit the topic",
        detected_at=computed_at,
    )


def _intervention(intervention_id: str, topic: str = "fractions", score: float = 22.0) -> Intervention:
    return Intervention(
        intervention_id=intervention_id,
        target_type="student",
        target_id="s1",
        subject="maths",
        topic=topic,
        template_id="reteach-small-group",
        intervention_type="small_group_reteach",
        description="Reteach",
        severity="high",
        risk_tier="high",
        expected_impact=55.0,
        resource_cost=2.5,
        score=score,
        created_at=NOW,
        student_ids=["s1"],
    )


def test_student_roundtrip_keeps_attendance(temp_db):
    db.upsert_student(StudentProfile("s1", "KS2", ["maths", "english"], attendance=92.5))
    db.upsert_student(StudentProfile("s1", "KS3", ["maths"]))
    profile = db.get_student("s1")
    assert profile.key_stage == "KS3"
    assert profile.subjects == ["maths"]
    # Re-registering without attendance keeps the recorded figure.
    assert profile.attendance == 92.5
    assert db.get_student("missing") is None
    assert db.list_student_ids() == ["s1"]

    db.set_attendance("s1", 80.0)
    assert db.get_student("s1").attendance == 80.0


def test_cohort_membership_is_idempotent(temp_db):
    for student_id in ("s1", "s2", "s3"):
        db.upsert_student(StudentProfile(student_id, "KS2", ["maths"]))
    db.add_cohort_members("year5", ["s2", "s1"])
    db.add_cohort_members("year5", ["s1", "s3"])
    assert db.list_cohort_members("year5") == ["s1", "s2", "s3"]
    assert db.list_cohort_members("other") == []


def test_save_ingestion_trims_window(temp_db):
    db.upsert_student(StudentProfile("s1", "KS2", ["maths", "english"]))
    metrics = SubjectMetrics(accuracy=MetricValue(60.0, -1.5), samples=3, last_event_at=NOW)
    for i in range(5):
        db.save_ingestion(_snapshot(i), 3, metrics, _state())
    db.save_ingestion(_snapshot(9, subject="english"), 3, metrics, _state())

    window = db.list_snapshots("s1", "maths")
    assert [s.response_time_ms for s in window] == [10002, 10003, 10004]
    assert window[0].timestamp == NOW + timedelta(minutes=2)
    assert set(db.list_snapshot_windows("s1")) == {"maths", "english"}

    stored = db.get_subject_metrics("s1")["maths"]
    assert stored.accuracy.value == 60.0
    assert stored.accuracy.trend == -1.5
    assert stored.last_event_at == NOW


def test_difficulty_state_and_adjustments(temp_db):
    db.upsert_student(StudentProfile("s1", "KS2", ["maths"]))
    assert db.get_difficulty_state("s1", "maths") is None
    db.save_difficulty_state(_state())
    state = db.get_difficulty_state("s1", "maths")
    assert state.level == 5
    assert state.buffer == [(1.0, 12000)]

    for previous, new in ((5, 6), (6, 7)):
        adjustment = DifficultyAdjustment(
            student_id="s1",
            subject="maths",
            previous_level=previous,
            new_level=new,
            reason="Sustained correct answers",
            confidence=0.9,
            next_steps=["Introduce harder items"],
            created_at=NOW,
        )
        db.save_ingestion(_snapshot(new), 200, SubjectMetrics(), _state(new), adjustment)
    adjustments = db.list_difficulty_adjustments("s1", "maths")
    assert [a.new_level for a in adjustments] == [7, 6]
    assert adjustments[0].created_at == NOW
    assert db.get_difficulty_state("s1", "maths").level == 7


def test_replace_outputs_keeps_history_and_status(temp_db):
    first = NOW
    second = NOW + timedelta(hours=1)
    db.replace_student_outputs(
        "s1",
        _risk("medium", first),
        [_gap("fractions", first), _gap("algebra", first)],
        [_intervention("iv-1"), _intervention("iv-2", topic="algebra", score=30.0)],
    )
    db.update_intervention_status("iv-1", "scheduled")

    alert = ProgressAlert("s1", "risk_escalation", "high", "Risk tier rose from medium to high", second)
    db.replace_student_outputs(
        "s1",
        _risk("high", second),
        [_gap("fractions", second)],
        [_intervention("iv-1")],
        alerts=[alert],
    )

    assert db.get_current_risk("s1").tier == "high"
    assert [r.tier for r in db.list_risk_history("s1")] == ["high", "medium"]

    assert [g.topic for g in db.get_current_gaps("s1")] == ["fractions"]
    history = db.list_gap_history("s1")
    assert [when for when, _ in history] == [second, first]
    assert [g.topic for g in history[1][1]] == ["fractions", "algebra"]

    current = db.get_current_interventions("student", "s1")
    assert [(i.intervention_id, i.status) for i in current] == [("iv-1", "scheduled")]
    # Superseded interventions remain addressable.
    assert db.get_intervention("iv-2").topic == "algebra"
    assert db.get_intervention("missing") is None

    alerts = db.list_alerts("s1")
    assert len(alerts) == 1
    assert alerts[0].created_at == second


def test_recompute_failures_are_logged(temp_db):
    failure = RecomputeFailure(
        student_id="s1",
        error="RuntimeError: boom",
        failures=2,
        failed_at=NOW,
        retry_after=NOW + timedelta(minutes=2),
    )
    db.record_recompute_failure(failure)
    rows = db.list_recompute_failures("s1")
    assert len(rows) == 1
    assert rows[0]["failures"] == 2
    assert rows[0]["error"] == "RuntimeError: boom"
    assert db.list_recompute_failures("s2") == []
