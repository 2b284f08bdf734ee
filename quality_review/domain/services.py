from __future__ import annotations

import logging
import math
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from itertools import combinations

from .models import (
    EVALUATOR_ROLE_ORDER,
    ConfidenceTable,
    CycleSnapshot,
    CycleSummary,
    DimensionAggregate,
    DivergenceFlag,
    EvaluatorRole,
    FinalQuality,
    ReviewDimension,
    ScoreLevel,
    ScoreScale,
    TierTable,
)

DEFAULT_SCORE_SCALE = ScoreScale(
    levels=(
        ScoreLevel("LOW", 1.0),
        ScoreLevel("MEDIUM", 2.0),
        ScoreLevel("HIGH", 3.0),
        ScoreLevel("NOT_APPLICABLE", None),
    )
)
DEFAULT_TIER_TABLE = TierTable(breakpoints=(("HIGH", 2.5), ("MEDIUM", 1.5)), fallback="LOW")
DEFAULT_CONFIDENCE_TABLE = ConfidenceTable(thresholds=(("GREEN", 20), ("AMBER", 5)), fallback="RED")
DEFAULT_DIVERGENCE_THRESHOLD = 2.0


def mean(values: Iterable[float]) -> float | None:
    """Order-independent mean; ``math.fsum`` keeps the result exact-rounded."""
    items = list(values)
    if not items:
        return None
    return math.fsum(items) / len(items)


@dataclass(slots=True)
class _ScorePoint:
    dimension_id: int
    reviewer_id: int
    value: float


class AggregationService:
    """
    Turns the raw scores of one review cycle into a ``CycleSummary``.

    Pure computation: no session, no clock. All numbers stay unrounded; the
    presentation layer rounds.
    """

    def __init__(
        self,
        scale: ScoreScale = DEFAULT_SCORE_SCALE,
        tiers: TierTable = DEFAULT_TIER_TABLE,
        confidence: ConfidenceTable = DEFAULT_CONFIDENCE_TABLE,
        divergence_threshold: float = DEFAULT_DIVERGENCE_THRESHOLD,
        logger: logging.Logger | None = None,
    ):
        if divergence_threshold < 0:
            raise ValueError("Divergence threshold cannot be negative")
        self.scale = scale
        self.tiers = tiers
        self.confidence = confidence
        self.divergence_threshold = divergence_threshold
        self.logger = logger or logging.getLogger(__name__)

    def _score_points(
        self, cycle: CycleSnapshot, known_ids: set[int]
    ) -> list[_ScorePoint]:
        points: list[_ScorePoint] = []
        for evaluation in cycle.evaluations:
            for entry in evaluation.scores:
                if entry.dimension_id not in known_ids:
                    self.logger.debug(
                        "Cycle %s: ignoring score for unknown dimension %s",
                        cycle.id,
                        entry.dimension_id,
                    )
                    continue
                value = self.scale.value_of(entry.score)
                if value is None:
                    continue
                points.append(_ScorePoint(entry.dimension_id, evaluation.reviewer_id, value))
        return points

    def dimension_aggregates(
        self, points: list[_ScorePoint], dimensions: list[ReviewDimension]
    ) -> list[DimensionAggregate]:
        values_by_dimension: dict[int, list[float]] = defaultdict(list)
        for point in points:
            values_by_dimension[point.dimension_id].append(point.value)

        results: list[DimensionAggregate] = []
        for dimension in dimensions:
            values = values_by_dimension.get(dimension.id)
            if not values:
                continue
            average = mean(values)
            results.append(
                DimensionAggregate(
                    dimension_id=dimension.id,
                    name=dimension.name,
                    description=dimension.description,
                    position=dimension.position,
                    average=average,
                    score_label=self.scale.nearest_label(average),
                    count=len(values),
                    confidence=self.confidence.bucket(len(values)),
                )
            )
        return results

    def divergence_flags(
        self,
        points: list[_ScorePoint],
        dimensions: list[ReviewDimension],
        reviewer_roles_by_user_id: Mapping[int, Iterable[EvaluatorRole]],
    ) -> list[DivergenceFlag]:
        # (dimension, role) -> values; multi-role reviewers count once per role
        buckets: dict[tuple[int, EvaluatorRole], list[float]] = defaultdict(list)
        for point in points:
            for role in set(reviewer_roles_by_user_id.get(point.reviewer_id, ())):
                buckets[(point.dimension_id, EvaluatorRole(role))].append(point.value)

        flags: list[DivergenceFlag] = []
        for dimension in dimensions:
            role_averages = {
                role: mean(buckets[(dimension.id, role)])
                for role in EVALUATOR_ROLE_ORDER
                if buckets.get((dimension.id, role))
            }
            for role_a, role_b in combinations(EVALUATOR_ROLE_ORDER, 2):
                if role_a not in role_averages or role_b not in role_averages:
                    continue
                average_a = role_averages[role_a]
                average_b = role_averages[role_b]
                difference = abs(average_a - average_b)
                if difference < self.divergence_threshold:
                    continue
                flags.append(
                    DivergenceFlag(
                        dimension_id=dimension.id,
                        dimension_name=dimension.name,
                        role_a=role_a,
                        role_b=role_b,
                        average_a=average_a,
                        average_b=average_b,
                        difference=difference,
                    )
                )
        return flags

    def aggregate(
        self,
        cycle: CycleSnapshot,
        dimensions: Iterable[ReviewDimension],
        reviewer_roles_by_user_id: Mapping[int, Iterable[EvaluatorRole]] | None = None,
    ) -> CycleSummary:
        """
        Summarise one cycle.

        - Per-dimension mean, count, nearest score label and confidence bucket
          (dimensions without numeric scores are omitted).
        - Divergence flags for role pairs whose averages differ by at least the
          threshold.
        - Overall average = unweighted mean of the per-dimension averages,
          classified into a quality tier (``UNSCORED`` when nothing was scored).
        """
        ordered = sorted(
            {dimension.id: dimension for dimension in dimensions}.values(),
            key=lambda dimension: (dimension.position, dimension.id),
        )
        points = self._score_points(cycle, {dimension.id for dimension in ordered})
        aggregates = self.dimension_aggregates(points, ordered)
        flags = self.divergence_flags(points, ordered, reviewer_roles_by_user_id or {})
        overall_average = mean(aggregate.average for aggregate in aggregates)

        self.logger.debug(
            "Aggregated cycle %s: %d dimensions, %d divergence flags",
            cycle.id,
            len(aggregates),
            len(flags),
        )
        return CycleSummary(
            cycle_id=cycle.id,
            card_id=cycle.card_id,
            cycle_number=cycle.cycle_number,
            opened_at=cycle.opened_at,
            closed_at=cycle.closed_at,
            is_final=cycle.is_final,
            locked_at=cycle.locked_at,
            evaluations_count=len(cycle.evaluations),
            dimensions=aggregates,
            overall_average=overall_average,
            quality_tier=self.tiers.classify(overall_average),
            divergence_flags=flags,
        )

    def final_quality(
        self, cycle: CycleSnapshot, dimensions: Iterable[ReviewDimension]
    ) -> FinalQuality:
        summary = self.aggregate(cycle, dimensions)
        return FinalQuality(summary.overall_average, summary.quality_tier)


def aggregate(
    cycle: CycleSnapshot,
    dimensions: Iterable[ReviewDimension],
    reviewer_roles_by_user_id: Mapping[int, Iterable[EvaluatorRole]] | None = None,
    service: AggregationService | None = None,
) -> CycleSummary:
    return (service or AggregationService()).aggregate(cycle, dimensions, reviewer_roles_by_user_id)
