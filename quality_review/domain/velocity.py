"""
Quality-adjusted velocity: story-point throughput reweighted by the quality
tier each completed unit was finalized with, bucketed by completion week.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Any

import pandas as pd

from .models import UNSCORED, FinalQuality

DEFAULT_VELOCITY_MULTIPLIERS: dict[str, float] = {
    "HIGH": 1.0,
    "MEDIUM": 0.8,
    "LOW": 0.5,
    UNSCORED: 1.0,
}

_BUCKET_COLUMNS = ["task_count", "scored_task_count", "raw_points", "adjusted_points"]


def story_points_from_payload(payload: Mapping[str, Any] | None) -> float:
    if not isinstance(payload, Mapping):
        return 0.0
    value = payload.get("storyPoints")
    if isinstance(value, bool) or not isinstance(value, int | float):
        return 0.0
    try:
        points = float(value)
    except OverflowError:
        return 0.0
    if not math.isfinite(points):
        return 0.0
    return max(0.0, points)


def week_start(moment: datetime) -> date:
    """Monday (UTC) of the ISO week ``moment`` falls in; naive values are read as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    day = moment.astimezone(UTC).date()
    return day - timedelta(days=day.weekday())


@dataclass(slots=True)
class CompletedUnit:
    card_id: int
    completed_at: datetime
    payload: Mapping[str, Any] | None = None
    board_id: int | None = None
    is_done: bool = True

    @property
    def story_points(self) -> float:
        return story_points_from_payload(self.payload)


@dataclass(slots=True)
class VelocityBucket:
    task_count: int = 0
    scored_task_count: int = 0
    raw_points: float = 0.0
    adjusted_points: float = 0.0

    @property
    def adjustment_delta(self) -> float:
        return self.adjusted_points - self.raw_points

    @property
    def adjustment_factor(self) -> float | None:
        if self.raw_points <= 0:
            return None
        return self.adjusted_points / self.raw_points


@dataclass(slots=True)
class WeeklyVelocity:
    week_start: date
    per_week: VelocityBucket
    cumulative: VelocityBucket


@dataclass(slots=True)
class VelocityReport:
    project_id: int | None
    multipliers: dict[str, float]
    totals: VelocityBucket
    series: list[WeeklyVelocity] = field(default_factory=list)


def _bucket_from_row(row: Mapping[str, Any]) -> VelocityBucket:
    return VelocityBucket(
        task_count=int(row["task_count"]),
        scored_task_count=int(row["scored_task_count"]),
        raw_points=float(row["raw_points"]),
        adjusted_points=float(row["adjusted_points"]),
    )


def quality_adjusted_velocity(
    units: Iterable[CompletedUnit],
    final_summaries: Mapping[int, FinalQuality],
    multipliers: Mapping[str, float] | None = None,
    project_id: int | None = None,
) -> VelocityReport:
    """
    Build the weekly quality-weighted burn-up.

    Only done units (on ``project_id`` when given) count. A unit without a final
    cycle is weighted as ``UNSCORED``; tiers missing from ``multipliers`` weigh 1.0.
    ``adjustment_factor`` is ``None`` whenever no raw points were delivered.

    Example:
        >>> report = quality_adjusted_velocity(units, {}, project_id=3)
        >>> [week.per_week.raw_points for week in report.series]
    """
    table = dict(DEFAULT_VELOCITY_MULTIPLIERS if multipliers is None else multipliers)
    rows: list[dict[str, Any]] = []
    for unit in units:
        if not unit.is_done:
            continue
        if project_id is not None and unit.board_id != project_id:
            continue
        final = final_summaries.get(unit.card_id) or FinalQuality(None, UNSCORED)
        points = unit.story_points
        rows.append(
            {
                "week_start": week_start(unit.completed_at),
                "task_count": 1,
                "scored_task_count": int(final.overall_average is not None),
                "raw_points": points,
                "adjusted_points": points * table.get(final.quality_tier, 1.0),
            }
        )

    if not rows:
        return VelocityReport(project_id=project_id, multipliers=table, totals=VelocityBucket())

    frame = pd.DataFrame(rows)
    weekly = frame.groupby("week_start", sort=True)[_BUCKET_COLUMNS].sum()
    cumulative = weekly.cumsum()

    series = [
        WeeklyVelocity(
            week_start=week,
            per_week=_bucket_from_row(weekly.loc[week]),
            cumulative=_bucket_from_row(cumulative.loc[week]),
        )
        for week in weekly.index
    ]
    return VelocityReport(
        project_id=project_id,
        multipliers=table,
        totals=series[-1].cumulative,
        series=series,
    )
