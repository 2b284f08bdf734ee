from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class EvaluatorRole(StrEnum):
    LEAD = "LEAD"
    PO = "PO"
    HEAD_OF_ART = "HEAD_OF_ART"


# Declaration order drives divergence pair order and role listings.
EVALUATOR_ROLE_ORDER: tuple[EvaluatorRole, ...] = tuple(EvaluatorRole)


class Audience(StrEnum):
    LEAD = "LEAD"
    PO = "PO"
    BOTH = "BOTH"


class PermissionLevel(StrEnum):
    VIEWER = "VIEWER"
    MEMBER = "MEMBER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class UnitType(StrEnum):
    TASK = "TASK"
    USER_STORY = "USER_STORY"
    EPIC = "EPIC"
    UTILITY = "UTILITY"


UNSCORED = "UNSCORED"


def sort_roles(roles: Iterable[EvaluatorRole]) -> list[EvaluatorRole]:
    wanted = set(roles)
    return [role for role in EVALUATOR_ROLE_ORDER if role in wanted]


def roles_for_audience(audience: Audience) -> frozenset[EvaluatorRole]:
    if audience == Audience.LEAD:
        return frozenset({EvaluatorRole.LEAD})
    if audience == Audience.PO:
        return frozenset({EvaluatorRole.PO})
    return frozenset({EvaluatorRole.LEAD, EvaluatorRole.PO})


def audience_from_roles(roles: Iterable[EvaluatorRole]) -> Audience:
    """Closest audience shorthand for a role set; sets without LEAD or PO read as BOTH."""
    role_set = set(roles)
    has_lead = EvaluatorRole.LEAD in role_set
    has_po = EvaluatorRole.PO in role_set
    if has_lead and not has_po:
        return Audience.LEAD
    if has_po and not has_lead:
        return Audience.PO
    return Audience.BOTH


# ---------- Scales and tables (operator configuration) ----------


@dataclass(frozen=True, slots=True)
class ScoreLevel:
    label: str
    value: float | None  # None = level carries no numeric weight (e.g. not applicable)


@dataclass(frozen=True, slots=True)
class ScoreScale:
    """Ordered ordinal scale mapping score labels to numeric values."""

    levels: tuple[ScoreLevel, ...]

    def __post_init__(self) -> None:
        labels = [level.label for level in self.levels]
        if not labels:
            raise ValueError("Score scale needs at least one level")
        if len(set(labels)) != len(labels):
            raise ValueError("Score scale labels must be unique")
        if not any(level.value is not None for level in self.levels):
            raise ValueError("Score scale needs at least one numeric level")

    @property
    def labels(self) -> list[str]:
        return [level.label for level in self.levels]

    def parse(self, raw: Any) -> str | None:
        if not isinstance(raw, str):
            return None
        normalized = raw.strip().upper()
        for level in self.levels:
            if level.label.upper() == normalized:
                return level.label
        return None

    def value_of(self, label: str) -> float | None:
        for level in self.levels:
            if level.label == label:
                return level.value
        return None

    def nearest_label(self, average: float | None) -> str | None:
        if average is None:
            return None
        numeric = [level for level in self.levels if level.value is not None]
        # ties resolve towards the higher level
        best = min(numeric, key=lambda level: (abs(level.value - average), -level.value))
        return best.label


@dataclass(frozen=True, slots=True)
class TierTable:
    """Ordered breakpoints: the first tier whose lower bound the average reaches wins."""

    breakpoints: tuple[tuple[str, float], ...]
    fallback: str

    def __post_init__(self) -> None:
        bounds = [bound for _, bound in self.breakpoints]
        if bounds != sorted(bounds, reverse=True):
            raise ValueError("Tier breakpoints must be ordered from highest to lowest")

    @property
    def tiers(self) -> list[str]:
        return [tier for tier, _ in self.breakpoints] + [self.fallback, UNSCORED]

    def classify(self, average: float | None) -> str:
        if average is None or math.isnan(average):
            return UNSCORED
        for tier, lower_bound in self.breakpoints:
            if average >= lower_bound:
                return tier
        return self.fallback


@dataclass(frozen=True, slots=True)
class ConfidenceTable:
    """Count thresholds, highest first: (label, minimum number of scores)."""

    thresholds: tuple[tuple[str, int], ...]
    fallback: str

    def __post_init__(self) -> None:
        minimums = [minimum for _, minimum in self.thresholds]
        if minimums != sorted(minimums, reverse=True):
            raise ValueError("Confidence thresholds must be ordered from highest to lowest")

    def bucket(self, count: int) -> str:
        for label, minimum in self.thresholds:
            if count >= minimum:
                return label
        return self.fallback


# ---------- Entities ----------


@dataclass(slots=True)
class ReviewDimension:
    id: int
    name: str
    position: int
    description: str | None = None
    is_active: bool = True
    roles: frozenset[EvaluatorRole] = frozenset()
    unit_types: tuple[str, ...] = ()
    required_flag: str | None = None

    @property
    def audience(self) -> Audience:
        return audience_from_roles(self.roles)


@dataclass(slots=True)
class ReviewableUnit:
    id: int
    unit_type: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    board_id: int | None = None
    title: str = ""


@dataclass(slots=True)
class ScoreEntry:
    dimension_id: int
    score: str


@dataclass(slots=True)
class EvaluationSnapshot:
    reviewer_id: int
    scores: list[ScoreEntry] = field(default_factory=list)


@dataclass(slots=True)
class CycleSnapshot:
    id: int
    card_id: int
    cycle_number: int
    opened_at: datetime
    closed_at: datetime | None = None
    is_final: bool = False
    locked_at: datetime | None = None
    evaluations: list[EvaluationSnapshot] = field(default_factory=list)


# ---------- Aggregation results ----------


@dataclass(slots=True)
class DimensionAggregate:
    dimension_id: int
    name: str
    description: str | None
    position: int
    average: float | None  # None only for zero-sample rows in project summaries
    score_label: str | None
    count: int
    confidence: str


@dataclass(slots=True)
class DivergenceFlag:
    dimension_id: int
    dimension_name: str
    role_a: EvaluatorRole
    role_b: EvaluatorRole
    average_a: float
    average_b: float
    difference: float


@dataclass(slots=True)
class CycleSummary:
    cycle_id: int
    card_id: int
    cycle_number: int
    opened_at: datetime
    closed_at: datetime | None
    is_final: bool
    locked_at: datetime | None
    evaluations_count: int
    dimensions: list[DimensionAggregate]
    overall_average: float | None
    quality_tier: str
    divergence_flags: list[DivergenceFlag]


@dataclass(slots=True)
class FinalQuality:
    overall_average: float | None
    quality_tier: str
