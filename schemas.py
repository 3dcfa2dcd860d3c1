"""Pydantic schemas for the HTTP request bodies."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt

from engines.models import PerformanceSnapshot

__all__ = [
    "StudentRegistration",
    "AttendanceUpdate",
    "CohortMembers",
    "InteractionEvent",
    "DifficultyOverride",
    "InterventionStatusUpdate",
    "RecomputeRequest",
]


class StudentRegistration(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    student_id: str = Field(alias="studentId", min_length=1)
    key_stage: str = Field(alias="keyStage", description="Curriculum key stage, KS1 to KS4.")
    subjects: List[str] = Field(min_length=1)
    attendance: float | None = Field(default=None, ge=0.0, le=100.0)


class AttendanceUpdate(BaseModel):
    attendance: float | None = Field(default=None, ge=0.0, le=100.0)


class CohortMembers(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    student_ids: List[str] = Field(alias="studentIds", min_length=1)


class InteractionEvent(BaseModel):
    """One graded interaction as emitted by an upstream collaborator."""

    model_config = ConfigDict(populate_by_name=True)

    student_id: str = Field(alias="studentId", min_length=1)
    subject: str = Field(min_length=1)
    topic: str = Field(min_length=1)
    correct: StrictBool
    response_time_ms: StrictInt = Field(
        alias="responseTimeMs",
        description="Time to answer in milliseconds; must be positive.",
    )
    timestamp: datetime | None = Field(
        default=None,
        description="When the interaction happened; defaults to the time of receipt. Naive values are UTC.",
    )
    completed: StrictBool = True

    def to_snapshot(self) -> PerformanceSnapshot:
        moment = self.timestamp or datetime.now(timezone.utc)
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return PerformanceSnapshot(
            student_id=self.student_id,
            subject=self.subject,
            topic=self.topic,
            timestamp=moment,
            correct=self.correct,
            response_time_ms=self.response_time_ms,
            completed=self.completed,
        )


class DifficultyOverride(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    adaptation_speed: int | None = Field(default=None, alias="adaptationSpeed")
    difficulty_adjustment: int | None = Field(default=None, alias="difficultyAdjustment")
    level: int | None = None


class InterventionStatusUpdate(BaseModel):
    status: Literal["proposed", "scheduled", "in_progress", "completed"]


class RecomputeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    student_ids: List[str] | None = Field(default=None, alias="studentIds")
