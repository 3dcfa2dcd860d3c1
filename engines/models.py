"""Domain records shared by the analytics engines."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

TIER_ORDER: Tuple[str, ...] = ("high", "medium", "low")
"""Risk tiers from worst to best."""

SEVERITY_RANK: Dict[str, int] = {"high": 3, "medium": 2, "low": 1}

INTERVENTION_STATUSES: Tuple[str, ...] = ("proposed", "scheduled", "in_progress", "completed")

METRIC_NAMES: Tuple[str, ...] = ("accuracy", "speed", "retention", "engagement", "progress")


def clamp(value: float, lower: float = 0.0, upper: float = 100.0) -> float:
    return max(lower, min(upper, value))


@dataclass(frozen=True)
class PerformanceSnapshot:
    """One graded interaction; never mutated once created."""

    student_id: str
    subject: str
    topic: str
    timestamp: datetime
    correct: bool
    response_time_ms: int
    completed: bool = True


@dataclass
class MetricValue:
    value: float = 0.0
    trend: float = 0.0


@dataclass
class SubjectMetrics:
    accuracy: MetricValue = field(default_factory=MetricValue)
    speed: MetricValue = field(default_factory=MetricValue)
    retention: MetricValue = field(default_factory=MetricValue)
    engagement: MetricValue = field(default_factory=MetricValue)
    progress: MetricValue = field(default_factory=MetricValue)
    completion: float = 0.0
    samples: int = 0
    last_event_at: Optional[datetime] = None

    def metric(self, name: str) -> MetricValue:
        if name not in METRIC_NAMES:
            raise KeyError(name)
        return getattr(self, name)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["last_event_at"] = self.last_event_at.isoformat() if self.last_event_at else None
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubjectMetrics":
        last = data.get("last_event_at")
        return cls(
            accuracy=MetricValue(**data.get("accuracy", {})),
            speed=MetricValue(**data.get("speed", {})),
            retention=MetricValue(**data.get("retention", {})),
            engagement=MetricValue(**data.get("engagement", {})),
            progress=MetricValue(**data.get("progress", {})),
            completion=float(data.get("completion", 0.0)),
            samples=int(data.get("samples", 0)),
            last_event_at=datetime.fromisoformat(last) if last else None,
        )


@dataclass
class StudentProfile:
    student_id: str
    key_stage: str
    subjects: List[str]
    attendance: Optional[float] = None
    created_at: Optional[datetime] = None


@dataclass
class MetricPrediction:
    current: float
    predicted: float
    lower: float
    upper: float
    confidence: float
    low_confidence: bool
    samples: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RiskAssessment:
    student_id: str
    tier: str
    overall_score: Optional[float]
    trend: str
    factors: Dict[str, Any]
    computed_at: datetime
    previous_tier: Optional[str] = None
    low_confidence: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["computed_at"] = self.computed_at.isoformat()
        return payload


@dataclass
class LearningGap:
    student_id: str
    subject: str
    topic: str
    severity: str
    mastery: float
    threshold: float
    recommendation: str
    detected_at: datetime
    last_practiced_at: Optional[datetime] = None

    @property
    def deficit(self) -> float:
        return round(self.threshold - self.mastery, 4)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["deficit"] = self.deficit
        payload["detected_at"] = self.detected_at.isoformat()
        payload["last_practiced_at"] = (
            self.last_practiced_at.isoformat() if self.last_practiced_at else None
        )
        return payload


@dataclass
class Intervention:
    intervention_id: str
    target_type: str  # 'student' or 'cohort'
    target_id: str
    subject: str
    topic: str
    template_id: str
    intervention_type: str
    description: str
    severity: str
    risk_tier: str
    expected_impact: float
    resource_cost: float
    score: float
    created_at: datetime
    affected_count: int = 1
    student_ids: List[str] = field(default_factory=list)
    status: str = "proposed"

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        return payload


@dataclass
class RecommendationSet:
    """Ranked interventions plus the gaps no catalog template could address."""

    target_id: str
    interventions: List[Intervention]
    unaddressed_gaps: List[LearningGap]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_id": self.target_id,
            "interventions": [item.to_dict() for item in self.interventions],
            "unaddressed_gaps": [gap.to_dict() for gap in self.unaddressed_gaps],
        }


@dataclass
class DifficultyState:
    student_id: str
    subject: str
    level: int
    adaptation_speed: int
    difficulty_adjustment: int
    buffer: List[Tuple[float, int]] = field(default_factory=list)
    pending_step: float = 0.0
    events_since_change: int = 0
    pace: float = 50.0
    pacing: str = "standard"
    pace_modifier: float = 1.0
    last_adjusted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["buffer"] = [list(entry) for entry in self.buffer]
        payload["last_adjusted_at"] = (
            self.last_adjusted_at.isoformat() if self.last_adjusted_at else None
        )
        payload["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DifficultyState":
        def _dt(value: Any) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return cls(
            student_id=data["student_id"],
            subject=data["subject"],
            level=int(data["level"]),
            adaptation_speed=int(data["adaptation_speed"]),
            difficulty_adjustment=int(data["difficulty_adjustment"]),
            buffer=[(float(signal), int(rt)) for signal, rt in data.get("buffer", [])],
            pending_step=float(data.get("pending_step", 0.0)),
            events_since_change=int(data.get("events_since_change", 0)),
            pace=float(data.get("pace", 50.0)),
            pacing=str(data.get("pacing", "standard")),
            pace_modifier=float(data.get("pace_modifier", 1.0)),
            last_adjusted_at=_dt(data.get("last_adjusted_at")),
            updated_at=_dt(data.get("updated_at")),
        )


@dataclass
class DifficultyAdjustment:
    student_id: str
    subject: str
    previous_level: int
    new_level: int
    reason: str
    confidence: float
    next_steps: List[str]
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        return payload


@dataclass
class ProgressAlert:
    student_id: str
    alert_type: str  # 'performance_drop', 'risk_escalation', 'achievement'
    severity: str
    message: str
    created_at: datetime
    subject: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        return payload


@dataclass
class StalenessWarning:
    """Attached to served results older than the freshness SLA."""

    computed_at: datetime
    age_seconds: float
    sla_seconds: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "computed_at": self.computed_at.isoformat(),
            "age_seconds": round(self.age_seconds, 3),
            "sla_seconds": self.sla_seconds,
        }
