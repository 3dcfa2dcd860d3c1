"""Closed-loop difficulty and pacing control per student and subject."""

from __future__ import annotations

import statistics
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from engine_config import EngineConfig
from engines.models import DifficultyAdjustment, DifficultyState
from engines.validation import ValidationError

MAX_ADAPTATION_SPEED = 5
MAX_DIFFICULTY_ADJUSTMENT = 10

_NEXT_STEPS = {
    "increase": [
        "Introduce more challenging items at the new level",
        "Monitor accuracy closely over the next few items",
        "Offer extension tasks if accuracy stays high",
    ],
    "decrease": [
        "Provide scaffolded practice at the new level",
        "Revisit prerequisite concepts before moving on",
        "Reassess once accuracy recovers",
    ],
}


@dataclass
class DifficultyStepResult:
    state: DifficultyState
    previous_level: int
    changed: bool
    signal: float
    adjustment: Optional[DifficultyAdjustment] = None


class AdaptiveDifficultyController:
    """Per-(student, subject) difficulty state machine.

    Parameters
    ----------
    config:
        Engine configuration; ``config.difficulty`` provides the level
        bounds, defaults, buffer size and expected response time.

    Each graded interaction produces a signal in ``[-1, 1]``. The
    ``difficulty_adjustment`` dial (1 = gradual, 10 = responsive) sets how
    much the latest signal counts against the buffered average, and
    ``adaptation_speed`` (1-5) scales how fast the blended signal
    accumulates towards a one-level step. A level can only change once every
    ``6 - adaptation_speed`` interactions.
    """

    def __init__(self, config: EngineConfig) -> None:
        self.config = config

    # ----- state -------------------------------------------------------
    def initial_state(self, student_id: str, subject: str, now: Optional[datetime] = None) -> DifficultyState:
        cfg = self.config.difficulty
        return DifficultyState(
            student_id=student_id,
            subject=subject,
            level=cfg.default_level,
            adaptation_speed=cfg.default_adaptation_speed,
            difficulty_adjustment=cfg.default_difficulty_adjustment,
            updated_at=now or datetime.now(timezone.utc),
        )

    @staticmethod
    def required_spacing(adaptation_speed: int) -> int:
        """Minimum number of interactions between two level changes."""

        return MAX_ADAPTATION_SPEED + 1 - adaptation_speed

    def expected_time(self, state: DifficultyState) -> float:
        if state.buffer:
            return float(statistics.median(rt for _, rt in state.buffer))
        return float(self.config.difficulty.expected_response_ms)

    def event_signal(self, correct: bool, response_time_ms: int, expected_ms: float) -> float:
        if not correct:
            return -1.0
        ratio = response_time_ms / expected_ms if expected_ms > 0 else 1.0
        if ratio <= 1.0:
            return 1.0
        return max(self.config.difficulty.slow_correct_floor, 1.0 / ratio)

    def _pacing(self, buffer: List[Tuple[float, int]]) -> Tuple[float, str, float]:
        cfg = self.config.difficulty
        if not buffer:
            return 50.0, "standard", 1.0
        pace = max(0.0, min(100.0, 50.0 + 50.0 * statistics.fmean(signal for signal, _ in buffer)))
        if pace < cfg.gradual_pace_below:
            label = "gradual"
        elif pace > cfg.accelerated_pace_above:
            label = "accelerated"
        else:
            label = "standard"
        return round(pace, 2), label, round(1.0 - (pace - 50.0) / 100.0, 2)

    # ----- control step -----------------------------------------------
    def step(
        self,
        state: DifficultyState,
        correct: bool,
        response_time_ms: int,
        now: Optional[datetime] = None,
    ) -> DifficultyStepResult:
        """Apply one graded interaction and return the successor state."""

        cfg = self.config.difficulty
        moment = now or datetime.now(timezone.utc)

        signal = self.event_signal(correct, response_time_ms, self.expected_time(state))
        buffer = (list(state.buffer) + [(signal, int(response_time_ms))])[-cfg.buffer_size:]
        recency = state.difficulty_adjustment / MAX_DIFFICULTY_ADJUSTMENT
        blended = recency * signal + (1.0 - recency) * statistics.fmean(s for s, _ in buffer)
        gain = state.adaptation_speed / MAX_ADAPTATION_SPEED
        pending = round(max(-1.0, min(1.0, state.pending_step + blended * gain)), 6)
        events_since_change = state.events_since_change + 1

        level = state.level
        last_adjusted_at = state.last_adjusted_at
        adjustment: Optional[DifficultyAdjustment] = None
        if abs(pending) >= 1.0 and events_since_change >= self.required_spacing(state.adaptation_speed):
            direction = 1 if pending > 0 else -1
            target = max(cfg.min_level, min(cfg.max_level, level + direction))
            pending = 0.0
            if target != level:
                adjustment = self._adjustment(state, target, buffer, moment)
                level = target
                events_since_change = 0
                last_adjusted_at = moment

        pace, pacing, pace_modifier = self._pacing(buffer)
        new_state = replace(
            state,
            level=level,
            buffer=buffer,
            pending_step=pending,
            events_since_change=events_since_change,
            pace=pace,
            pacing=pacing,
            pace_modifier=pace_modifier,
            last_adjusted_at=last_adjusted_at,
            updated_at=moment,
        )
        return DifficultyStepResult(
            state=new_state,
            previous_level=state.level,
            changed=level != state.level,
            signal=round(blended, 6),
            adjustment=adjustment,
        )

    def _adjustment(
        self,
        state: DifficultyState,
        target: int,
        buffer: List[Tuple[float, int]],
        moment: datetime,
    ) -> DifficultyAdjustment:
        direction = "increase" if target > state.level else "decrease"
        mean_signal = statistics.fmean(s for s, _ in buffer)
        if direction == "increase":
            reason = "Sustained correct answers at or under the expected response time"
        else:
            reason = "Repeated incorrect or slow answers"
        return DifficultyAdjustment(
            student_id=state.student_id,
            subject=state.subject,
            previous_level=state.level,
            new_level=target,
            reason=reason,
            confidence=round(min(1.0, abs(mean_signal)), 4),
            next_steps=list(_NEXT_STEPS[direction]),
            created_at=moment,
        )

    # ----- overrides ---------------------------------------------------
    def configure(
        self,
        state: DifficultyState,
        *,
        adaptation_speed: Optional[int] = None,
        difficulty_adjustment: Optional[int] = None,
        level: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> DifficultyState:
        """Apply an external configuration override to ``state``."""

        cfg = self.config.difficulty
        moment = now or datetime.now(timezone.utc)
        updated = state
        if adaptation_speed is not None:
            if not 1 <= adaptation_speed <= MAX_ADAPTATION_SPEED:
                raise ValidationError(f"adaptation_speed must be between 1 and {MAX_ADAPTATION_SPEED}")
            updated = replace(updated, adaptation_speed=int(adaptation_speed))
        if difficulty_adjustment is not None:
            if not 1 <= difficulty_adjustment <= MAX_DIFFICULTY_ADJUSTMENT:
                raise ValidationError(
                    f"difficulty_adjustment must be between 1 and {MAX_DIFFICULTY_ADJUSTMENT}"
                )
            updated = replace(updated, difficulty_adjustment=int(difficulty_adjustment))
        if level is not None:
            if not cfg.min_level <= level <= cfg.max_level:
                raise ValidationError(f"level must be between {cfg.min_level} and {cfg.max_level}")
            if level != updated.level:
                updated = replace(
                    updated,
                    level=int(level),
                    pending_step=0.0,
                    events_since_change=0,
                    last_adjusted_at=moment,
                )
        return replace(updated, updated_at=moment)
