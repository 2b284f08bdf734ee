"""
Quality rollups over final review cycles: one board (project summary) or the
cards assigned to one user (user summary).
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime

import pandas as pd

from .models import (
    UNSCORED,
    CycleSnapshot,
    DimensionAggregate,
    EvaluationSnapshot,
    ReviewDimension,
)
from .services import AggregationService, mean
from .velocity import week_start

LATEST_FINALIZED_LIMIT = 20


@dataclass(slots=True)
class FinalizedCycle:
    """A card's final cycle together with the dimensions it is judged on."""

    cycle: CycleSnapshot
    card_title: str
    dimensions: list[ReviewDimension]
    board_id: int | None = None
    board_name: str | None = None

    @property
    def finalized_at(self) -> datetime:
        return self.cycle.locked_at or self.cycle.closed_at or self.cycle.opened_at


@dataclass(slots=True)
class TrendPoint:
    week_start: date
    average_quality: float | None
    sample_size: int
    tier_counts: dict[str, int]


@dataclass(slots=True)
class IterationMetrics:
    average_cycles_to_done: float | None
    high_churn_threshold: int
    high_churn_count: int
    high_churn_rate: float | None  # percent


@dataclass(slots=True)
class ProjectQualitySummary:
    project_id: int
    project_name: str
    done_task_count: int
    finalized_task_count: int
    overall_average: float | None
    overall_quality_tier: str
    tier_distribution: dict[str, int]
    trend: list[TrendPoint] = field(default_factory=list)
    per_dimension: list[DimensionAggregate] = field(default_factory=list)
    iteration_metrics: IterationMetrics | None = None


@dataclass(slots=True)
class FinalizedTask:
    cycle_id: int
    card_id: int
    card_title: str
    board_id: int | None
    board_name: str | None
    cycle_number: int
    finalized_at: datetime
    overall_average: float | None
    quality_tier: str

    @property
    def week_start(self) -> date:
        return week_start(self.finalized_at)


@dataclass(slots=True)
class UserQualitySummary:
    user_id: int
    user_name: str
    finalized_task_count: int
    overall_average: float | None
    overall_quality_tier: str
    progression: list[FinalizedTask] = field(default_factory=list)
    per_dimension: list[DimensionAggregate] = field(default_factory=list)
    latest_finalized: list[FinalizedTask] = field(default_factory=list)


def _trend(rows: list[dict], tiers: list[str]) -> list[TrendPoint]:
    if not rows:
        return []
    frame = pd.DataFrame(rows)
    points: list[TrendPoint] = []
    for week, group in frame.groupby("week_start", sort=True):
        scored = [value for value in group["overall_average"] if value is not None and value == value]
        counts = Counter(group["quality_tier"])
        points.append(
            TrendPoint(
                week_start=week,
                average_quality=mean(scored),
                sample_size=len(scored),
                tier_counts={tier: int(counts.get(tier, 0)) for tier in tiers},
            )
        )
    return points


def _per_dimension(
    finalized: list[FinalizedCycle],
    active_dimensions: list[ReviewDimension],
    service: AggregationService,
) -> list[DimensionAggregate]:
    """Pool every final-cycle score and aggregate it per active dimension, in position order."""
    pooled = CycleSnapshot(
        id=0,
        card_id=0,
        cycle_number=0,
        opened_at=datetime.min,
        evaluations=[
            EvaluationSnapshot(reviewer_id=evaluation.reviewer_id, scores=evaluation.scores)
            for item in finalized
            for evaluation in item.cycle.evaluations
        ],
    )
    scored_by_id = {
        aggregate.dimension_id: aggregate
        for aggregate in service.aggregate(pooled, active_dimensions).dimensions
    }
    return [
        scored_by_id.get(dimension.id)
        or DimensionAggregate(
            dimension_id=dimension.id,
            name=dimension.name,
            description=dimension.description,
            position=dimension.position,
            average=None,
            score_label=None,
            count=0,
            confidence=service.confidence.bucket(0),
        )
        for dimension in sorted(active_dimensions, key=lambda item: (item.position, item.id))
    ]


def summarize_project(
    project_id: int,
    project_name: str,
    done_card_ids: Iterable[int],
    finalized: Iterable[FinalizedCycle],
    active_dimensions: list[ReviewDimension],
    service: AggregationService,
    high_churn_threshold: int = 3,
) -> ProjectQualitySummary:
    """
    Roll final cycles of one project into totals, tier distribution, weekly
    trend (by finalization week), per-dimension aggregate and churn metrics.

    The tier distribution counts done cards; a done card without a final
    cycle counts as ``UNSCORED``.
    """
    finalized = list(finalized)
    tiers = service.tiers.tiers
    summaries = [
        (item, service.aggregate(item.cycle, item.dimensions)) for item in finalized
    ]

    tier_by_card = {item.cycle.card_id: summary.quality_tier for item, summary in summaries}
    distribution = {tier: 0 for tier in tiers}
    done_ids = list(done_card_ids)
    for card_id in done_ids:
        distribution[tier_by_card.get(card_id, UNSCORED)] += 1

    trend_rows = [
        {
            "week_start": week_start(item.finalized_at),
            "overall_average": summary.overall_average,
            "quality_tier": summary.quality_tier,
        }
        for item, summary in summaries
    ]

    overall_average = mean(
        summary.overall_average for _, summary in summaries if summary.overall_average is not None
    )
    finalized_count = len(summaries)
    cycle_numbers = [item.cycle.cycle_number for item in finalized]
    high_churn = sum(1 for number in cycle_numbers if number >= high_churn_threshold)

    return ProjectQualitySummary(
        project_id=project_id,
        project_name=project_name,
        done_task_count=len(done_ids),
        finalized_task_count=finalized_count,
        overall_average=overall_average,
        overall_quality_tier=service.tiers.classify(overall_average),
        tier_distribution=distribution,
        trend=_trend(trend_rows, tiers),
        per_dimension=_per_dimension(finalized, active_dimensions, service),
        iteration_metrics=IterationMetrics(
            average_cycles_to_done=mean(cycle_numbers),
            high_churn_threshold=high_churn_threshold,
            high_churn_count=high_churn,
            high_churn_rate=(high_churn / finalized_count * 100) if finalized_count else None,
        ),
    )


def summarize_user(
    user_id: int,
    user_name: str,
    finalized: Iterable[FinalizedCycle],
    active_dimensions: list[ReviewDimension],
    service: AggregationService,
    latest_limit: int = LATEST_FINALIZED_LIMIT,
) -> UserQualitySummary:
    """
    Roll the final cycles of a user's assigned cards into totals, a progression
    ordered by finalization time, per-dimension aggregates and the most recently
    finalized tasks (newest first, at most ``latest_limit``).
    """
    finalized = list(finalized)
    tasks = []
    for item in finalized:
        summary = service.aggregate(item.cycle, item.dimensions)
        tasks.append(
            FinalizedTask(
                cycle_id=item.cycle.id,
                card_id=item.cycle.card_id,
                card_title=item.card_title,
                board_id=item.board_id,
                board_name=item.board_name,
                cycle_number=item.cycle.cycle_number,
                finalized_at=item.finalized_at,
                overall_average=summary.overall_average,
                quality_tier=summary.quality_tier,
            )
        )

    overall_average = mean(
        task.overall_average for task in tasks if task.overall_average is not None
    )
    progression = sorted(tasks, key=lambda task: (task.finalized_at, task.cycle_id))
    return UserQualitySummary(
        user_id=user_id,
        user_name=user_name,
        finalized_task_count=len(tasks),
        overall_average=overall_average,
        overall_quality_tier=service.tiers.classify(overall_average),
        progression=progression,
        per_dimension=_per_dimension(finalized, active_dimensions, service),
        latest_finalized=list(reversed(progression))[:latest_limit],
    )
