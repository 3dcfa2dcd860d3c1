# app.py - Learning analytics engine HTTP surface
# - Event ingestion drives metrics and the difficulty controller synchronously
# - Risk, gaps and recommendations are served from the last recompute
# - Optional background recompute loop (BATCH_INTERVAL_SECONDS)

import logging
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Dict

from fastapi import FastAPI, HTTPException

import db
from engines.analytics_orchestrator import AnalyticsEngine
from engines.models import StudentProfile
from engines.validation import (
    UnknownInterventionError,
    UnknownStudentError,
    ValidationError as EngineValidationError,
)
from schemas import (
    AttendanceUpdate,
    CohortMembers,
    DifficultyOverride,
    InteractionEvent,
    InterventionStatusUpdate,
    RecomputeRequest,
    StudentRegistration,
)

logger = logging.getLogger(__name__)

ENGINE = AnalyticsEngine()


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import describe_environment, get_env_float, get_env_int, validate_environment
        validate_environment()

        db.init()
        workers = get_env_int("BATCH_MAX_WORKERS")
        if workers:
            ENGINE.batch.config = ENGINE.config.batch.model_copy(update={"max_workers": workers})
        interval = get_env_float("BATCH_INTERVAL_SECONDS")
        if interval:
            ENGINE.start_batch(interval)
        logger.info("Analytics engine ready: %s", describe_environment())
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    try:
        yield
    finally:
        ENGINE.stop_batch()


app = FastAPI(title="Learning Analytics Engine", version="1.0.0", lifespan=_lifespan)


@contextmanager
def _engine_errors():
    """Translate engine validation errors into HTTP responses."""
    try:
        yield
    except (UnknownStudentError, UnknownInterventionError) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except EngineValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def _profile_payload(profile: StudentProfile) -> Dict[str, Any]:
    return {
        "student_id": profile.student_id,
        "key_stage": profile.key_stage,
        "subjects": list(profile.subjects),
        "attendance": profile.attendance,
        "created_at": profile.created_at.isoformat() if profile.created_at else None,
    }


@app.get("/health")
def health():
    return {"status": "ok", "batch_running": ENGINE.batch.running}


# -------------- students & cohorts --------------
@app.post("/students")
def register_student(body: StudentRegistration):
    with _engine_errors():
        profile = ENGINE.register_student(body.student_id, body.key_stage, body.subjects, body.attendance)
    return _profile_payload(profile)


@app.post("/students/{student_id}/attendance")
def record_attendance(student_id: str, body: AttendanceUpdate):
    with _engine_errors():
        profile = ENGINE.record_attendance(student_id, body.attendance)
    return _profile_payload(profile)


@app.post("/cohorts/{cohort_id}/members")
def assign_cohort(cohort_id: str, body: CohortMembers):
    with _engine_errors():
        members = ENGINE.assign_cohort(cohort_id, body.student_ids)
    return {"cohort_id": cohort_id, "student_ids": members}


# -------------- ingestion --------------
@app.post("/events")
def ingest_event(body: InteractionEvent):
    with _engine_errors():
        result = ENGINE.ingest(body.to_snapshot())
    return result.to_dict()


# -------------- predictions & risk --------------
@app.get("/students/{student_id}/predictions")
def get_predictions(student_id: str):
    with _engine_errors():
        predictions = ENGINE.get_predictions(student_id)
    return {"student_id": student_id, "subjects": predictions}


@app.get("/students/{student_id}/forecast/{subject}")
def get_forecast(student_id: str, subject: str, metric: str = "accuracy", periods: int = 4):
    with _engine_errors():
        points = ENGINE.get_forecast(student_id, subject, metric, periods)
    return {
        "student_id": student_id,
        "subject": subject,
        "metric": metric,
        "points": [
            {"period": p.period, "predicted": p.predicted, "lower": p.lower, "upper": p.upper}
            for p in points
        ],
    }


@app.get("/students/{student_id}/risk")
def get_risk(student_id: str, refresh: bool = False):
    with _engine_errors():
        served = ENGINE.get_risk(student_id, refresh=refresh)
    return served.to_dict()


@app.get("/students/{student_id}/risk/history")
def get_risk_history(student_id: str, limit: int = 50):
    with _engine_errors():
        history = ENGINE.get_risk_history(student_id, limit)
    return {"student_id": student_id, "history": [item.to_dict() for item in history]}


@app.get("/students/{student_id}/gaps")
def get_gaps(student_id: str, refresh: bool = False):
    with _engine_errors():
        served = ENGINE.get_gaps(student_id, refresh=refresh)
    return served.to_dict()


@app.get("/students/{student_id}/gaps/history")
def get_gap_history(student_id: str, limit: int = 20):
    with _engine_errors():
        history = ENGINE.get_gap_history(student_id, limit)
    return {"student_id": student_id, "history": history}


@app.get("/students/{student_id}/recommendations")
def get_recommendations(student_id: str, refresh: bool = False):
    with _engine_errors():
        served = ENGINE.get_recommendations(student_id, refresh=refresh)
    return served.to_dict()


@app.get("/students/{student_id}/alerts")
def get_alerts(student_id: str, limit: int = 50):
    with _engine_errors():
        alerts = ENGINE.get_alerts(student_id, limit)
    return {"student_id": student_id, "alerts": [alert.to_dict() for alert in alerts]}


# -------------- difficulty --------------
@app.get("/students/{student_id}/difficulty/{subject}")
def get_difficulty(student_id: str, subject: str):
    with _engine_errors():
        state = ENGINE.get_difficulty_state(student_id, subject)
    return state.to_dict()


@app.put("/students/{student_id}/difficulty/{subject}")
def configure_difficulty(student_id: str, subject: str, body: DifficultyOverride):
    with _engine_errors():
        state = ENGINE.configure_difficulty(
            student_id,
            subject,
            adaptation_speed=body.adaptation_speed,
            difficulty_adjustment=body.difficulty_adjustment,
            level=body.level,
        )
    return state.to_dict()


@app.get("/students/{student_id}/difficulty/{subject}/adjustments")
def list_difficulty_adjustments(student_id: str, subject: str, limit: int = 50):
    with _engine_errors():
        adjustments = ENGINE.list_difficulty_adjustments(student_id, subject, limit)
    return {
        "student_id": student_id,
        "subject": subject,
        "adjustments": [item.to_dict() for item in adjustments],
    }


# -------------- cohorts & interventions --------------
@app.get("/cohorts/{cohort_id}/risk")
def get_cohort_risk(cohort_id: str):
    with _engine_errors():
        served = ENGINE.get_cohort_risk(cohort_id)
    tiers = {"low": 0, "medium": 0, "high": 0}
    for result in served.values():
        tiers[result.value.tier] += 1
    return {
        "cohort_id": cohort_id,
        "tiers": tiers,
        "students": {student_id: result.to_dict() for student_id, result in served.items()},
    }


@app.get("/cohorts/{cohort_id}/recommendations")
def get_cohort_recommendations(cohort_id: str):
    with _engine_errors():
        recommendations = ENGINE.get_cohort_recommendations(cohort_id)
    return recommendations.to_dict()


@app.patch("/interventions/{intervention_id}")
def update_intervention(intervention_id: str, body: InterventionStatusUpdate):
    with _engine_errors():
        intervention = ENGINE.update_intervention_status(intervention_id, body.status)
    return intervention.to_dict()


@app.post("/recompute")
def recompute(body: RecomputeRequest | None = None):
    student_ids = body.student_ids if body is not None else None
    report = ENGINE.run_batch_cycle(student_ids)
    return report.to_dict()
