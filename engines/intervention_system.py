"""Intervention recommendation from learning gaps and risk tiers."""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from engine_config import EngineConfig, InterventionTemplate
from engines.models import SEVERITY_RANK, TIER_ORDER, Intervention, LearningGap, RecommendationSet

_LOGGER = logging.getLogger(__name__)


def intervention_id(target_type: str, target_id: str, subject: str, topic: str, template_id: str) -> str:
    """Stable id so recomputes of the same proposal keep their external status."""

    digest = hashlib.sha1(
        "|".join((target_type, target_id, subject, topic, template_id)).encode("utf-8")
    ).hexdigest()
    return f"iv-{digest[:16]}"


def _worst_tier(tiers: Iterable[str]) -> str:
    return min(tiers, key=TIER_ORDER.index)


def _dedupe_gaps(gaps: Iterable[LearningGap]) -> List[LearningGap]:
    """One gap per (subject, topic), keeping the most severe."""

    best: Dict[Tuple[str, str], LearningGap] = {}
    for gap in gaps:
        key = (gap.subject, gap.topic)
        current = best.get(key)
        if current is None or SEVERITY_RANK[gap.severity] > SEVERITY_RANK[current.severity]:
            best[key] = gap
    return list(best.values())


class InterventionRecommender:
    """Map (severity, risk tier) pairs onto the configured template catalog.

    Candidates are scored by expected impact per unit of resource cost. A gap
    that no template covers is returned in ``unaddressed_gaps`` instead of
    being dropped.
    """

    def __init__(self, config: EngineConfig) -> None:
        self.config = config

    @property
    def templates(self) -> Sequence[InterventionTemplate]:
        return self.config.recommendations.templates

    def candidates(
        self,
        gap: LearningGap,
        tier: str,
        *,
        group_only: bool = False,
    ) -> List[InterventionTemplate]:
        matches = [
            template
            for template in self.templates
            if template.matches(gap.subject, gap.topic, gap.severity, tier)
            and (template.group_capable or not group_only)
        ]
        matches.sort(key=lambda template: (-template.score, template.template_id))
        return matches

    def _build(
        self,
        template: InterventionTemplate,
        *,
        target_type: str,
        target_id: str,
        gap: LearningGap,
        tier: str,
        created_at: datetime,
        student_ids: List[str],
    ) -> Intervention:
        affected = len(student_ids)
        return Intervention(
            intervention_id=intervention_id(target_type, target_id, gap.subject, gap.topic, template.template_id),
            target_type=target_type,
            target_id=target_id,
            subject=gap.subject,
            topic=gap.topic,
            template_id=template.template_id,
            intervention_type=template.intervention_type,
            description=template.description,
            severity=gap.severity,
            risk_tier=tier,
            expected_impact=template.expected_impact,
            resource_cost=template.resource_cost,
            score=round(template.score * affected, 4),
            created_at=created_at,
            affected_count=affected,
            student_ids=sorted(student_ids),
        )

    @staticmethod
    def _rank(interventions: Iterable[Intervention], limit: int) -> List[Intervention]:
        ordered = sorted(
            interventions,
            key=lambda item: (-item.score, -SEVERITY_RANK[item.severity], item.subject, item.topic),
        )
        return ordered[:limit]

    def recommend(
        self,
        student_id: str,
        gaps: Iterable[LearningGap],
        tier: str,
        now: Optional[datetime] = None,
    ) -> RecommendationSet:
        """Ranked, deduplicated interventions for one student."""

        created_at = now or datetime.now(timezone.utc)
        chosen: Dict[Tuple[str, str], Intervention] = {}
        unaddressed: List[LearningGap] = []
        for gap in _dedupe_gaps(gaps):
            matches = self.candidates(gap, tier)
            if not matches:
                unaddressed.append(gap)
                continue
            proposal = self._build(
                matches[0],
                target_type="student",
                target_id=student_id,
                gap=gap,
                tier=tier,
                created_at=created_at,
                student_ids=[student_id],
            )
            key = (gap.subject, gap.topic)
            existing = chosen.get(key)
            if existing is None or proposal.score > existing.score:
                chosen[key] = proposal

        if unaddressed:
            _LOGGER.info(
                "No intervention template for %d gap(s) of %s: %s",
                len(unaddressed),
                student_id,
                ", ".join(f"{gap.subject}/{gap.topic}" for gap in unaddressed),
            )
        return RecommendationSet(
            target_id=student_id,
            interventions=self._rank(chosen.values(), self.config.recommendations.max_per_student),
            unaddressed_gaps=unaddressed,
        )

    def recommend_cohort(
        self,
        cohort_id: str,
        members: Mapping[str, Tuple[Sequence[LearningGap], str]],
        now: Optional[datetime] = None,
    ) -> RecommendationSet:
        """Group shared gaps across a cohort into single group interventions.

        ``members`` maps each student id to ``(gaps, risk_tier)``. The
        ``affected_count`` of each proposal equals the number of individual
        gaps merged into it.
        """

        created_at = now or datetime.now(timezone.utc)
        groups: Dict[Tuple[str, str], List[Tuple[str, LearningGap, str]]] = {}
        for student_id in sorted(members):
            gaps, tier = members[student_id]
            for gap in _dedupe_gaps(gaps):
                groups.setdefault((gap.subject, gap.topic), []).append((student_id, gap, tier))

        proposals: List[Intervention] = []
        unaddressed: List[LearningGap] = []
        for (subject, topic), entries in sorted(groups.items()):
            worst_gap = max((gap for _, gap, _ in entries), key=lambda gap: SEVERITY_RANK[gap.severity])
            tier = _worst_tier(tier for _, _, tier in entries)
            matches = self.candidates(worst_gap, tier, group_only=True)
            if not matches:
                unaddressed.extend(gap for _, gap, _ in entries)
                continue
            proposals.append(
                self._build(
                    matches[0],
                    target_type="cohort",
                    target_id=cohort_id,
                    gap=worst_gap,
                    tier=tier,
                    created_at=created_at,
                    student_ids=[student_id for student_id, _, _ in entries],
                )
            )

        return RecommendationSet(
            target_id=cohort_id,
            interventions=self._rank(proposals, self.config.recommendations.max_per_cohort),
            unaddressed_gaps=unaddressed,
        )
