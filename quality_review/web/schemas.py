from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Snake-case attributes, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------- Requests ----------


class QuestionCreateRequest(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: bool = True
    audience: Optional[str] = None
    roles: Optional[list[str]] = None
    unit_types: Optional[list[str]] = None
    required_flag: Optional[str] = None


class QuestionUpdateRequest(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    unit_types: Optional[list[str]] = None
    required_flag: Optional[str] = None


class QuestionReorderRequest(CamelModel):
    question_ids: list[int]


class QuestionAudienceRequest(CamelModel):
    audience: Optional[str] = None


class QuestionRolesRequest(CamelModel):
    roles: Optional[list[str]] = None


class StageIn(CamelModel):
    in_review: bool = False
    done: bool = False


class TransitionRequest(CamelModel):
    from_stage: StageIn = Field(default_factory=StageIn, alias="from")
    to_stage: StageIn = Field(default_factory=StageIn, alias="to")
    at: Optional[datetime] = None


# ---------- Review questions ----------


class ReviewQuestion(CamelModel):
    id: int
    name: str
    description: Optional[str] = None
    position: int
    is_active: bool
    audience: str
    roles: list[str]
    unit_types: list[str] = Field(default_factory=list)
    required_flag: Optional[str] = None


class ReviewQuestionsResponse(CamelModel):
    scoring_options: list[str]
    questions: list[ReviewQuestion]


class QuestionDeleteResponse(CamelModel):
    id: int
    deleted: bool
    deactivated: bool


# ---------- Aggregates ----------


class DimensionSummary(CamelModel):
    dimension_id: int
    name: str
    description: Optional[str] = None
    position: int
    average: Optional[float] = None
    score_label: Optional[str] = None
    count: int
    confidence: str


class DivergenceFlagOut(CamelModel):
    dimension_id: int
    dimension_name: str
    role_a: str
    role_b: str
    average_a: float
    average_b: float
    difference: float


class CycleSummaryOut(CamelModel):
    cycle_id: int
    card_id: int
    cycle_number: int
    opened_at: datetime
    closed_at: Optional[datetime] = None
    is_final: bool
    locked_at: Optional[datetime] = None
    evaluations_count: int
    dimensions: list[DimensionSummary]
    overall_average: Optional[float] = None
    quality_tier: str
    divergence_flags: list[DivergenceFlagOut]


class CardOut(CamelModel):
    id: int
    title: str
    unit_type: str
    board_id: Optional[int] = None


class ProgressionPoint(CamelModel):
    cycle_number: int
    overall_average: Optional[float] = None
    quality_tier: str


class CardQualityResponse(CamelModel):
    card: CardOut
    dimensions: list[ReviewQuestion]
    latest_cycle: Optional[CycleSummaryOut] = None
    final_cycle: Optional[CycleSummaryOut] = None
    progression: list[ProgressionPoint]
    cycles: list[CycleSummaryOut]


# ---------- Evaluations ----------


class ScoreOut(CamelModel):
    dimension_id: int
    score: str


class EvaluationOut(CamelModel):
    id: int
    submitted_at: datetime
    updated_at: datetime
    scores: list[ScoreOut]


class FormCycle(CamelModel):
    id: int
    cycle_number: int
    locked_at: Optional[datetime] = None


class EvaluationFormResponse(CamelModel):
    cycle: FormCycle
    card: CardOut
    evaluator_roles: list[str]
    can_edit: bool
    has_existing_evaluation: bool
    existing_evaluation: Optional[EvaluationOut] = None
    dimensions: list[ReviewQuestion]
    scoring_options: list[str]


class EvaluationReceiptResponse(CamelModel):
    id: int
    review_cycle_id: int
    reviewer_id: int
    submitted_at: datetime
    updated_at: datetime
    cycle_number: int
    card_id: int
    card_title: str
    score_count: int


class PendingCard(CamelModel):
    id: int
    title: str
    unit_type: str
    board_id: Optional[int] = None
    board_name: str


class PendingItem(CamelModel):
    cycle_id: int
    cycle_number: int
    opened_at: datetime
    closed_at: Optional[datetime] = None
    is_in_review: bool
    eligible_dimension_count: int
    eligible_dimension_ids: list[int]
    card: PendingCard


class PendingResponse(CamelModel):
    evaluator_roles: list[str]
    pending_count: int
    pending: list[PendingItem]


class CardCycleOut(CamelModel):
    id: int
    cycle_number: int
    opened_at: datetime
    closed_at: Optional[datetime] = None
    is_final: bool
    locked_at: Optional[datetime] = None
    evaluations_count: int
    has_current_user_evaluation: bool
    current_user_evaluation_updated_at: Optional[datetime] = None


class CardCyclesResponse(CamelModel):
    card: PendingCard
    cycles: list[CardCycleOut]


class CurrentCycleResponse(CamelModel):
    card: PendingCard
    cycle: Optional[CardCycleOut] = None


# ---------- Metrics ----------


class VelocityTotals(CamelModel):
    done_task_count: int
    scored_task_count: int
    total_raw_points: float
    total_adjusted_points: float
    total_adjustment_delta: float
    overall_adjustment_factor: Optional[float] = None


class VelocityBucketOut(CamelModel):
    task_count: int
    scored_task_count: int
    raw_points: float
    adjusted_points: float
    adjustment_delta: float
    adjustment_factor: Optional[float] = None


class VelocityWeek(CamelModel):
    week_start: date
    per_week: VelocityBucketOut
    cumulative: VelocityBucketOut


class VelocityResponse(CamelModel):
    project_id: Optional[int] = None
    multipliers: dict[str, float]
    totals: VelocityTotals
    series: list[VelocityWeek]


class TrendPointOut(CamelModel):
    week_start: date
    average_quality: Optional[float] = None
    sample_size: int
    tier_counts: dict[str, int]


class IterationMetricsOut(CamelModel):
    average_cycles_to_done: Optional[float] = None
    high_churn_threshold: int
    high_churn_count: int
    high_churn_rate: Optional[float] = None


class ProjectTotals(CamelModel):
    done_task_count: int
    finalized_task_count: int
    overall_average: Optional[float] = None
    overall_quality_tier: str


class ProjectQualityResponse(CamelModel):
    project_id: int
    project_name: str
    totals: ProjectTotals
    tier_distribution: dict[str, int]
    trend: list[TrendPointOut]
    per_dimension: list[DimensionSummary]
    iteration_metrics: IterationMetricsOut


class IterationTotalsOut(CamelModel):
    done_task_count: int
    scored_task_count: int
    with_review_cycles_count: int
    without_review_cycles_count: int
    average_cycles_to_done: Optional[float] = None
    high_churn_threshold: int
    high_churn_count: int
    high_churn_rate: Optional[float] = None


class IterationBucketOut(CamelModel):
    cycle_count: int
    task_count: int
    percentage: Optional[float] = None
    scored_task_count: int
    average_quality: Optional[float] = None
    quality_tier: str
    total_story_points: float
    tier_distribution: dict[str, int]


class CorrelationPointOut(CamelModel):
    cycle_count: int
    average_quality: Optional[float] = None
    sample_size: int


class IterationDistributionResponse(CamelModel):
    project_id: Optional[int] = None
    totals: IterationTotalsOut
    distribution: list[IterationBucketOut]
    correlation: list[CorrelationPointOut]


class FinalizedTaskOut(CamelModel):
    cycle_id: int
    card_id: int
    card_title: str
    board_id: Optional[int] = None
    board_name: Optional[str] = None
    cycle_number: int
    finalized_at: datetime
    week_start: date
    overall_average: Optional[float] = None
    quality_tier: str


class UserTotals(CamelModel):
    finalized_task_count: int
    overall_average: Optional[float] = None
    overall_quality_tier: str


class UserQualityResponse(CamelModel):
    user_id: int
    user_name: str
    totals: UserTotals
    progression: list[FinalizedTaskOut]
    per_dimension: list[DimensionSummary]
    latest_finalized: list[FinalizedTaskOut]


# ---------- Lifecycle ----------


class TransitionResponse(CamelModel):
    entered_review: bool
    left_review: bool
    moved_to_done: bool
    reopened_from_done: bool
    cycle_opened: bool
    cycle_closed: bool
    cycle_deleted_as_transient: bool
    card_locked: bool
    card_unlocked: bool
    final_cycle_id: Optional[int] = None
    opened_cycle_id: Optional[int] = None
