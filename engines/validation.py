"""Validation utilities and the engine's error taxonomy."""

from datetime import datetime, timedelta, timezone
from typing import Optional

from engine_config import KEY_STAGES, EngineConfig
from engines.models import INTERVENTION_STATUSES, PerformanceSnapshot, StudentProfile


class ValidationError(Exception):
    """Base class for validation errors; the caller's request changed no state."""
    pass


class InvalidEventError(ValidationError):
    """Raised when an interaction event is malformed or names an unknown subject/topic."""
    pass


class UnknownStudentError(ValidationError):
    """Raised when a student id has no registered profile."""
    pass


class UnknownInterventionError(ValidationError):
    """Raised when an intervention id does not exist."""
    pass


class InvalidStatusTransitionError(ValidationError):
    """Raised when an intervention status update would move backwards."""
    pass


# Client clocks drift; anything further ahead than this is rejected.
_FUTURE_TOLERANCE = timedelta(minutes=5)


def ensure_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def validate_profile(
    config: EngineConfig,
    student_id: str,
    key_stage: str,
    subjects: list[str],
    attendance: Optional[float] = None,
) -> None:
    """Validate the curriculum context of a student registration."""

    if not student_id or not student_id.strip():
        raise ValidationError("student_id must be a non-empty string")
    if key_stage not in KEY_STAGES:
        raise ValidationError(
            f"Invalid key stage {key_stage!r}. Must be one of: {', '.join(KEY_STAGES)}"
        )
    if not subjects:
        raise ValidationError("A student must study at least one subject")
    if len(set(subjects)) != len(subjects):
        raise ValidationError("Duplicate subjects in registration")
    for subject in subjects:
        if not config.topics_for(subject, key_stage):
            raise ValidationError(
                f"Subject {subject!r} has no curriculum for key stage {key_stage}"
            )
    validate_attendance(attendance)


def validate_attendance(attendance: Optional[float]) -> None:
    if attendance is not None and not 0.0 <= float(attendance) <= 100.0:
        raise ValidationError("Attendance must be between 0 and 100")


def validate_event(
    config: EngineConfig,
    profile: StudentProfile,
    snapshot: PerformanceSnapshot,
    *,
    now: Optional[datetime] = None,
) -> None:
    """Validate an interaction event against the student's curriculum.

    Raises InvalidEventError if validation fails.
    """

    if snapshot.student_id != profile.student_id:
        raise InvalidEventError("Event student does not match the profile")

    if snapshot.subject not in profile.subjects:
        raise InvalidEventError(
            f"Unknown subject {snapshot.subject!r} for student {profile.student_id}"
        )

    topics = config.topic_ids(snapshot.subject, profile.key_stage)
    if snapshot.topic not in topics:
        raise InvalidEventError(
            f"Unknown topic {snapshot.topic!r} for {snapshot.subject} at {profile.key_stage}"
        )

    if isinstance(snapshot.response_time_ms, bool) or not isinstance(snapshot.response_time_ms, int):
        raise InvalidEventError("responseTimeMs must be an integer")
    if snapshot.response_time_ms <= 0:
        raise InvalidEventError("responseTimeMs must be positive")

    if not isinstance(snapshot.correct, bool):
        raise InvalidEventError("correct must be a boolean")

    reference = now or datetime.now(timezone.utc)
    if ensure_utc(snapshot.timestamp) > reference + _FUTURE_TOLERANCE:
        raise InvalidEventError("Event timestamp cannot be in the future")


def validate_status_transition(current: str, requested: str) -> None:
    if requested not in INTERVENTION_STATUSES:
        raise ValidationError(
            f"Invalid status {requested!r}. Must be one of: {', '.join(INTERVENTION_STATUSES)}"
        )
    if INTERVENTION_STATUSES.index(requested) < INTERVENTION_STATUSES.index(current):
        raise InvalidStatusTransitionError(
            f"Cannot move intervention from {current} back to {requested}"
        )
