"""
Iteration distribution: how many review cycles done tasks needed, and how
their final quality relates to that count.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import pandas as pd

from .models import UNSCORED, FinalQuality, TierTable
from .services import DEFAULT_TIER_TABLE, mean
from .velocity import story_points_from_payload


@dataclass(slots=True)
class DoneTask:
    card_id: int
    payload: Mapping[str, Any] | None = None


@dataclass(slots=True)
class IterationBucket:
    cycle_count: int
    task_count: int
    percentage: float | None
    scored_task_count: int
    average_quality: float | None
    quality_tier: str
    total_story_points: float
    tier_distribution: dict[str, int]


@dataclass(slots=True)
class IterationTotals:
    done_task_count: int
    scored_task_count: int
    with_review_cycles_count: int
    without_review_cycles_count: int
    average_cycles_to_done: float | None
    high_churn_threshold: int
    high_churn_count: int
    high_churn_rate: float | None  # percent


@dataclass(slots=True)
class CorrelationPoint:
    cycle_count: int
    average_quality: float | None
    sample_size: int


@dataclass(slots=True)
class IterationDistribution:
    project_id: int | None
    totals: IterationTotals
    distribution: list[IterationBucket] = field(default_factory=list)

    @property
    def correlation(self) -> list[CorrelationPoint]:
        return [
            CorrelationPoint(bucket.cycle_count, bucket.average_quality, bucket.task_count)
            for bucket in self.distribution
        ]


def _buckets(rows: list[dict], tiers: TierTable, done_count: int) -> list[IterationBucket]:
    if not rows:
        return []
    frame = pd.DataFrame(rows)
    buckets: list[IterationBucket] = []
    for cycle_count, group in frame.groupby("cycle_count", sort=True):
        scored = [value for value in group["overall_average"] if value is not None and value == value]
        counts = Counter(group["quality_tier"])
        average = mean(scored)
        buckets.append(
            IterationBucket(
                cycle_count=int(cycle_count),
                task_count=len(group),
                percentage=len(group) / done_count * 100,
                scored_task_count=len(scored),
                average_quality=average,
                quality_tier=tiers.classify(average),
                total_story_points=float(group["story_points"].sum()),
                tier_distribution={tier: int(counts.get(tier, 0)) for tier in tiers.tiers},
            )
        )
    return buckets


def iteration_distribution(
    tasks: Iterable[DoneTask],
    cycle_counts: Mapping[int, int],
    final_summaries: Mapping[int, FinalQuality],
    tiers: TierTable = DEFAULT_TIER_TABLE,
    high_churn_threshold: int = 3,
    project_id: int | None = None,
) -> IterationDistribution:
    """
    Bucket done tasks by their highest cycle number (0 when never reviewed).

    Each bucket carries the mean of its tasks' final overall averages; a task
    without a final cycle counts as ``UNSCORED`` and adds no quality sample.

    Example:
        >>> report = iteration_distribution([DoneTask(1, {"storyPoints": 3})], {1: 2}, {})
        >>> report.distribution[0].cycle_count
        2
    """
    tasks = list(tasks)
    rows = []
    for task in tasks:
        final = final_summaries.get(task.card_id) or FinalQuality(None, UNSCORED)
        rows.append(
            {
                "cycle_count": cycle_counts.get(task.card_id, 0),
                "story_points": story_points_from_payload(task.payload),
                "overall_average": final.overall_average,
                "quality_tier": final.quality_tier,
            }
        )

    done_count = len(tasks)
    counts = [row["cycle_count"] for row in rows]
    reviewed = sum(1 for count in counts if count > 0)
    high_churn = sum(1 for count in counts if count >= high_churn_threshold)
    scored = sum(
        1
        for task in tasks
        if task.card_id in final_summaries
        and final_summaries[task.card_id].overall_average is not None
    )

    return IterationDistribution(
        project_id=project_id,
        totals=IterationTotals(
            done_task_count=done_count,
            scored_task_count=scored,
            with_review_cycles_count=reviewed,
            without_review_cycles_count=done_count - reviewed,
            average_cycles_to_done=mean(counts),
            high_churn_threshold=high_churn_threshold,
            high_churn_count=high_churn,
            high_churn_rate=(high_churn / done_count * 100) if done_count else None,
        ),
        distribution=_buckets(rows, tiers, done_count),
    )
