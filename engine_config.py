"""Engine configuration loader.

All thresholds, weights and catalogs used by the analytics engines are read
from ``engine_config.json`` (or the file named by ``ENGINE_CONFIG_PATH``) and
validated into immutable pydantic models. Nothing in ``engines/`` hard-codes a
calibration constant; every component receives an :class:`EngineConfig`.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict, List, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

Tier = Literal["low", "medium", "high"]
Severity = Literal["low", "medium", "high"]

KEY_STAGES: Sequence[str] = ("KS1", "KS2", "KS3", "KS4")


class EngineConfigError(ValueError):
    """Raised when ``engine_config.json`` is missing or contains invalid data."""


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class MetricDecay(_Frozen):
    accuracy: float = Field(default=0.2, gt=0.0, le=1.0)
    speed: float = Field(default=0.2, gt=0.0, le=1.0)
    retention: float = Field(default=0.25, gt=0.0, le=1.0)
    engagement: float = Field(default=0.15, gt=0.0, le=1.0)


class EngagementWeights(_Frozen):
    frequency: float = Field(default=0.5, ge=0.0)
    completion: float = Field(default=0.5, ge=0.0)

    @model_validator(mode="after")
    def _non_zero(self) -> "EngagementWeights":
        if self.frequency + self.completion <= 0:
            raise ValueError("engagement weights must not both be zero")
        return self


class AggregationConfig(_Frozen):
    decay: MetricDecay = Field(default_factory=MetricDecay)
    trend_decay: float = Field(default=0.3, gt=0.0, le=1.0)
    speed_median_window: int = Field(default=20, ge=1)
    retention_gap_hours: float = Field(default=24.0, ge=0.0)
    engagement_target_gap_hours: float = Field(default=24.0, gt=0.0)
    engagement_weights: EngagementWeights = Field(default_factory=EngagementWeights)


class PredictionConfig(_Frozen):
    horizon: int = Field(default=10, ge=1)
    min_samples: int = Field(default=5, ge=1)
    full_confidence_samples: int = Field(default=30, ge=1)
    variance_window: int = Field(default=20, ge=2)
    max_band: float = Field(default=25.0, gt=0.0, le=100.0)
    z_score: float = Field(default=1.96, gt=0.0)


class RiskWeights(_Frozen):
    accuracy: float = Field(default=0.3, ge=0.0)
    engagement: float = Field(default=0.25, ge=0.0)
    progress: float = Field(default=0.25, ge=0.0)
    attendance: float = Field(default=0.2, ge=0.0)

    def total(self) -> float:
        return self.accuracy + self.engagement + self.progress + self.attendance


class RiskConfig(_Frozen):
    weights: RiskWeights = Field(default_factory=RiskWeights)
    low_threshold: float = Field(default=75.0, ge=0.0, le=100.0)
    medium_threshold: float = Field(default=50.0, ge=0.0, le=100.0)
    hysteresis_margin: float = Field(default=5.0, ge=0.0)
    trend_epsilon: float = Field(default=1.0, ge=0.0)
    min_samples: int = Field(default=5, ge=1)
    default_tier: Tier = "medium"

    @model_validator(mode="after")
    def _ordered(self) -> "RiskConfig":
        if self.medium_threshold >= self.low_threshold:
            raise ValueError("medium_threshold must be lower than low_threshold")
        if self.weights.total() <= 0:
            raise ValueError("risk weights must sum to a positive value")
        return self


class MasteryWeights(_Frozen):
    accuracy: float = Field(default=0.6, ge=0.0)
    retention: float = Field(default=0.25, ge=0.0)
    engagement: float = Field(default=0.15, ge=0.0)


class GapConfig(_Frozen):
    default_mastery_threshold: float = Field(default=80.0, ge=0.0, le=100.0)
    medium_deficit: float = Field(default=10.0, gt=0.0)
    high_deficit: float = Field(default=20.0, gt=0.0)
    max_gaps: int = Field(default=10, ge=1)
    min_topic_samples: int = Field(default=3, ge=1)
    mastery_weights: MasteryWeights = Field(default_factory=MasteryWeights)

    @model_validator(mode="after")
    def _ordered(self) -> "GapConfig":
        if self.medium_deficit >= self.high_deficit:
            raise ValueError("medium_deficit must be lower than high_deficit")
        return self


class InterventionTemplate(_Frozen):
    """Catalog entry; empty ``subjects``/``topics`` match any subject or topic."""

    template_id: str = Field(min_length=1)
    intervention_type: str = Field(min_length=1)
    description: str = ""
    subjects: List[str] = Field(default_factory=list)
    topics: List[str] = Field(default_factory=list)
    severities: List[Severity] = Field(min_length=1)
    risk_tiers: List[Tier] = Field(min_length=1)
    expected_impact: float = Field(gt=0.0, le=100.0)
    resource_cost: float = Field(gt=0.0)
    group_capable: bool = False

    def matches(self, subject: str, topic: str, severity: str, tier: str) -> bool:
        if self.subjects and subject not in self.subjects:
            return False
        if self.topics and topic not in self.topics:
            return False
        return severity in self.severities and tier in self.risk_tiers

    @property
    def score(self) -> float:
        return self.expected_impact / self.resource_cost


class RecommendationConfig(_Frozen):
    max_per_student: int = Field(default=5, ge=1)
    max_per_cohort: int = Field(default=10, ge=1)
    templates: List[InterventionTemplate] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_ids(self) -> "RecommendationConfig":
        seen: set[str] = set()
        for template in self.templates:
            if template.template_id in seen:
                raise ValueError(f"duplicate template_id: {template.template_id}")
            seen.add(template.template_id)
        return self


class DifficultyConfig(_Frozen):
    min_level: int = Field(default=1, ge=1)
    max_level: int = Field(default=10, ge=1)
    default_level: int = 5
    default_adaptation_speed: int = Field(default=3, ge=1, le=5)
    default_difficulty_adjustment: int = Field(default=5, ge=1, le=10)
    buffer_size: int = Field(default=5, ge=1)
    expected_response_ms: int = Field(default=30000, gt=0)
    slow_correct_floor: float = Field(default=0.25, ge=0.0, le=1.0)
    gradual_pace_below: float = 40.0
    accelerated_pace_above: float = 60.0

    @model_validator(mode="after")
    def _bounds(self) -> "DifficultyConfig":
        if self.min_level >= self.max_level:
            raise ValueError("min_level must be lower than max_level")
        if not self.min_level <= self.default_level <= self.max_level:
            raise ValueError("default_level must lie within [min_level, max_level]")
        if self.gradual_pace_below > self.accelerated_pace_above:
            raise ValueError("gradual_pace_below must not exceed accelerated_pace_above")
        return self


class AlertConfig(_Frozen):
    performance_drop_points: float = Field(default=10.0, gt=0.0)


class BatchConfig(_Frozen):
    max_workers: int = Field(default=4, ge=1)
    timeout_seconds: float = Field(default=30.0, gt=0.0)
    backoff_base_seconds: float = Field(default=60.0, ge=0.0)
    backoff_max_seconds: float = Field(default=3600.0, ge=0.0)


class CurriculumTopic(_Frozen):
    id: str = Field(min_length=1)
    label: str = Field(min_length=1)
    mastery_threshold: Optional[float] = Field(default=None, ge=0.0, le=100.0)


class CurriculumSubject(_Frozen):
    label: str
    mastery_threshold: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    key_stages: Dict[str, List[CurriculumTopic]]

    @model_validator(mode="after")
    def _known_stages(self) -> "CurriculumSubject":
        for stage, topics in self.key_stages.items():
            if stage not in KEY_STAGES:
                raise ValueError(f"unknown key stage: {stage}")
            ids = [topic.id for topic in topics]
            if len(ids) != len(set(ids)):
                raise ValueError(f"duplicate topic ids in {stage}")
        return self


class EngineConfig(_Frozen):
    window_size: int = Field(default=200, ge=1)
    freshness_sla_seconds: float = Field(default=86400.0, gt=0.0)
    aggregation: AggregationConfig = Field(default_factory=AggregationConfig)
    prediction: PredictionConfig = Field(default_factory=PredictionConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    gaps: GapConfig = Field(default_factory=GapConfig)
    recommendations: RecommendationConfig = Field(default_factory=RecommendationConfig)
    difficulty: DifficultyConfig = Field(default_factory=DifficultyConfig)
    alerts: AlertConfig = Field(default_factory=AlertConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    curriculum: Dict[str, CurriculumSubject] = Field(default_factory=dict)

    # ------------------------------------------------------------------
    def topics_for(self, subject: str, key_stage: str) -> List[CurriculumTopic]:
        """Return the curriculum topics for ``subject`` at ``key_stage``."""

        entry = self.curriculum.get(subject)
        if entry is None:
            return []
        return list(entry.key_stages.get(key_stage, []))

    def topic_ids(self, subject: str, key_stage: str) -> List[str]:
        return [topic.id for topic in self.topics_for(subject, key_stage)]

    def curriculum_size(self, subject: str, key_stage: str) -> int:
        return len(self.topics_for(subject, key_stage))

    def mastery_threshold(self, subject: str, key_stage: str, topic: str) -> float:
        """Topic override, then subject default, then the global default."""

        entry = self.curriculum.get(subject)
        if entry is not None:
            for candidate in entry.key_stages.get(key_stage, []):
                if candidate.id == topic and candidate.mastery_threshold is not None:
                    return candidate.mastery_threshold
            if entry.mastery_threshold is not None:
                return entry.mastery_threshold
        return self.gaps.default_mastery_threshold

    def topic_label(self, subject: str, key_stage: str, topic: str) -> str:
        for candidate in self.topics_for(subject, key_stage):
            if candidate.id == topic:
                return candidate.label
        return topic


def default_config_path() -> Path:
    override = os.getenv("ENGINE_CONFIG_PATH")
    if override:
        return Path(override)
    return Path(__file__).resolve().parent / "engine_config.json"


class EngineConfigRegistry:
    """Load and validate the engine configuration from disk."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path is not None else default_config_path()
        self._config: Optional[EngineConfig] = None
        self.reload()

    def reload(self) -> EngineConfig:
        """Reload the configuration file and replace the cached model."""

        if not self.path.exists():
            raise EngineConfigError(f"Engine config file not found: {self.path}")

        with self.path.open("r", encoding="utf-8") as fh:
            try:
                raw = json.load(fh)
            except json.JSONDecodeError as exc:
                raise EngineConfigError(f"Engine config is not valid JSON: {exc}") from exc

        if not isinstance(raw, dict):
            raise EngineConfigError("Engine config file must contain a JSON object")

        try:
            config = EngineConfig.model_validate(raw)
        except ValidationError as exc:
            raise EngineConfigError(f"Invalid engine config {self.path}: {exc}") from exc

        self._config = config
        return config

    @property
    def config(self) -> EngineConfig:
        assert self._config is not None
        return self._config


def load_engine_config(path: str | Path | None = None) -> EngineConfig:
    """Convenience wrapper returning a freshly validated :class:`EngineConfig`."""

    return EngineConfigRegistry(path).config
