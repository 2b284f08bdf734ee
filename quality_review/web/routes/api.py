from __future__ import annotations

import math
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy.orm import Session

from quality_review.application import api as app_api
from quality_review.domain.lifecycle import Stage
from quality_review.domain.models import (
    CycleSummary,
    DimensionAggregate,
    ReviewableUnit,
    ReviewDimension,
    sort_roles,
)
from quality_review.domain.project_summary import FinalizedTask
from quality_review.domain.velocity import VelocityBucket
from quality_review.infrastructure.config import get_settings
from quality_review.web.dependencies import get_current_user_id, get_db_session
from quality_review.web.schemas import (
    CardCycleOut,
    CardCyclesResponse,
    CardOut,
    CardQualityResponse,
    CorrelationPointOut,
    CurrentCycleResponse,
    CycleSummaryOut,
    DimensionSummary,
    DivergenceFlagOut,
    EvaluationFormResponse,
    EvaluationOut,
    EvaluationReceiptResponse,
    FinalizedTaskOut,
    FormCycle,
    IterationBucketOut,
    IterationDistributionResponse,
    IterationMetricsOut,
    IterationTotalsOut,
    PendingCard,
    PendingItem,
    PendingResponse,
    ProgressionPoint,
    ProjectQualityResponse,
    ProjectTotals,
    QuestionAudienceRequest,
    QuestionCreateRequest,
    QuestionDeleteResponse,
    QuestionReorderRequest,
    QuestionRolesRequest,
    QuestionUpdateRequest,
    ReviewQuestion,
    ReviewQuestionsResponse,
    ScoreOut,
    TransitionRequest,
    TransitionResponse,
    TrendPointOut,
    UserQualityResponse,
    UserTotals,
    VelocityBucketOut,
    VelocityResponse,
    VelocityTotals,
    VelocityWeek,
)

router = APIRouter(prefix="/api")


def _round(value: float | None, decimals: int | None = None) -> float | None:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    if decimals is None:
        decimals = get_settings().review.score_decimals
    return round(value, decimals)


def _round_factor(value: float | None) -> float | None:
    return _round(value, get_settings().review.factor_decimals)


def _question(dimension: ReviewDimension) -> ReviewQuestion:
    return ReviewQuestion(
        id=dimension.id,
        name=dimension.name,
        description=dimension.description,
        position=dimension.position,
        is_active=dimension.is_active,
        audience=dimension.audience.value,
        roles=[str(role) for role in sort_roles(dimension.roles)],
        unit_types=list(dimension.unit_types),
        required_flag=dimension.required_flag,
    )


def _card(unit: ReviewableUnit) -> CardOut:
    return CardOut(id=unit.id, title=unit.title, unit_type=unit.unit_type, board_id=unit.board_id)


def _dimension_summary(aggregate: DimensionAggregate) -> DimensionSummary:
    return DimensionSummary(
        dimension_id=aggregate.dimension_id,
        name=aggregate.name,
        description=aggregate.description,
        position=aggregate.position,
        average=_round(aggregate.average),
        score_label=aggregate.score_label,
        count=aggregate.count,
        confidence=aggregate.confidence,
    )


def _cycle_summary(summary: CycleSummary) -> CycleSummaryOut:
    return CycleSummaryOut(
        cycle_id=summary.cycle_id,
        card_id=summary.card_id,
        cycle_number=summary.cycle_number,
        opened_at=summary.opened_at,
        closed_at=summary.closed_at,
        is_final=summary.is_final,
        locked_at=summary.locked_at,
        evaluations_count=summary.evaluations_count,
        dimensions=[_dimension_summary(aggregate) for aggregate in summary.dimensions],
        overall_average=_round(summary.overall_average),
        quality_tier=summary.quality_tier,
        divergence_flags=[
            DivergenceFlagOut(
                dimension_id=flag.dimension_id,
                dimension_name=flag.dimension_name,
                role_a=str(flag.role_a),
                role_b=str(flag.role_b),
                average_a=_round(flag.average_a),
                average_b=_round(flag.average_b),
                difference=_round(flag.difference),
            )
            for flag in summary.divergence_flags
        ],
    )


def _bucket(bucket: VelocityBucket) -> VelocityBucketOut:
    return VelocityBucketOut(
        task_count=bucket.task_count,
        scored_task_count=bucket.scored_task_count,
        raw_points=_round(bucket.raw_points),
        adjusted_points=_round(bucket.adjusted_points),
        adjustment_delta=_round(bucket.adjustment_delta),
        adjustment_factor=_round_factor(bucket.adjustment_factor),
    )


def _receipt(receipt: app_api.EvaluationReceipt) -> EvaluationReceiptResponse:
    evaluation = receipt.evaluation
    return EvaluationReceiptResponse(
        id=evaluation.id,
        review_cycle_id=evaluation.cycle_id,
        reviewer_id=evaluation.reviewer_id,
        submitted_at=evaluation.submitted_at,
        updated_at=evaluation.updated_at,
        cycle_number=receipt.cycle_number,
        card_id=receipt.card_id,
        card_title=receipt.card_title,
        score_count=receipt.score_count,
    )


@router.get("/health")
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


# ---------- Review questions ----------


@router.get("/review-questions", response_model=ReviewQuestionsResponse)
def list_review_questions(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
) -> ReviewQuestionsResponse:
    result = app_api.list_review_questions(db, user_id)
    return ReviewQuestionsResponse(
        scoring_options=result.scoring_options,
        questions=[_question(dimension) for dimension in result.questions],
    )


@router.post(
    "/review-questions", response_model=ReviewQuestion, status_code=status.HTTP_201_CREATED
)
def create_review_question(
    payload: QuestionCreateRequest,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
) -> ReviewQuestion:
    try:
        dimension = app_api.create_review_question(
            db, user_id, payload.model_dump(exclude_unset=True)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    return _question(dimension)


@router.put("/review-questions/reorder", response_model=list[ReviewQuestion])
def reorder_review_questions(
    payload: QuestionReorderRequest,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
) -> list[ReviewQuestion]:
    try:
        dimensions = app_api.reorder_review_questions(db, user_id, payload.question_ids)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return [_question(dimension) for dimension in dimensions]


@router.patch("/review-questions/{question_id}", response_model=ReviewQuestion)
def update_review_question(
    question_id: int,
    payload: QuestionUpdateRequest,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
) -> ReviewQuestion:
    try:
        dimension = app_api.update_review_question(
            db, user_id, question_id, payload.model_dump(exclude_unset=True)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    return _question(dimension)


@router.delete("/review-questions/{question_id}", response_model=QuestionDeleteResponse)
def delete_review_question(
    question_id: int,
    hard: bool = Query(False),
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
) -> QuestionDeleteResponse:
    try:
        result = app_api.delete_review_question(db, user_id, question_id, hard=hard)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return QuestionDeleteResponse(**result)


@router.put("/review-questions/{question_id}/audience", response_model=ReviewQuestion)
def set_review_question_audience(
    question_id: int,
    payload: QuestionAudienceRequest,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
) -> ReviewQuestion:
    try:
        dimension = app_api.set_review_question_audience(db, user_id, question_id, payload.audience)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return _question(dimension)


@router.put("/review-questions/{question_id}/roles", response_model=ReviewQuestion)
def set_review_question_roles(
    question_id: int,
    payload: QuestionRolesRequest,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
) -> ReviewQuestion:
    try:
        dimension = app_api.set_review_question_roles(db, user_id, question_id, payload.roles)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return _question(dimension)


# ---------- Cards and cycles ----------


@router.get("/cards/{card_id}/quality", response_model=CardQualityResponse)
def get_card_quality(
    card_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
) -> CardQualityResponse:
    quality = app_api.get_card_quality(db, user_id, card_id)
    latest = quality.latest_cycle
    final = quality.final_cycle
    return CardQualityResponse(
        card=_card(quality.card),
        dimensions=[_question(dimension) for dimension in quality.dimensions],
        latest_cycle=_cycle_summary(latest) if latest else None,
        final_cycle=_cycle_summary(final) if final else None,
        progression=[
            ProgressionPoint(
                cycle_number=cycle.cycle_number,
                overall_average=_round(cycle.overall_average),
                quality_tier=cycle.quality_tier,
            )
            for cycle in quality.cycles
        ],
        cycles=[_cycle_summary(cycle) for cycle in quality.cycles],
    )


def _pending_card(cycles: app_api.CardCycles) -> PendingCard:
    return PendingCard(
        id=cycles.card.id,
        title=cycles.card.title,
        unit_type=cycles.card.unit_type,
        board_id=cycles.card.board_id,
        board_name=cycles.board_name,
    )


def _card_cycle(cycle: app_api.CycleListing) -> CardCycleOut:
    return CardCycleOut(
        id=cycle.id,
        cycle_number=cycle.cycle_number,
        opened_at=cycle.opened_at,
        closed_at=cycle.closed_at,
        is_final=cycle.is_final,
        locked_at=cycle.locked_at,
        evaluations_count=cycle.evaluations_count,
        has_current_user_evaluation=cycle.has_current_user_evaluation,
        current_user_evaluation_updated_at=cycle.current_user_evaluation_updated_at,
    )


@router.get("/cards/{card_id}/cycles", response_model=CardCyclesResponse)
def list_card_cycles(
    card_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
) -> CardCyclesResponse:
    result = app_api.list_card_cycles(db, user_id, card_id)
    return CardCyclesResponse(
        card=_pending_card(result),
        cycles=[_card_cycle(cycle) for cycle in result.cycles],
    )


@router.get("/cards/{card_id}/cycles/current", response_model=CurrentCycleResponse)
def get_current_card_cycle(
    card_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
) -> CurrentCycleResponse:
    result = app_api.get_current_card_cycle(db, user_id, card_id)
    current = result.current
    return CurrentCycleResponse(
        card=_pending_card(result),
        cycle=_card_cycle(current) if current else None,
    )


@router.post("/cards/{card_id}/review-cycles/transition", response_model=TransitionResponse)
def transition_card(
    card_id: int,
    payload: TransitionRequest,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
) -> TransitionResponse:
    try:
        result = app_api.apply_card_transition(
            db,
            user_id,
            card_id,
            Stage(in_review=payload.from_stage.in_review, done=payload.from_stage.done),
            Stage(in_review=payload.to_stage.in_review, done=payload.to_stage.done),
            now=payload.at,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    return TransitionResponse(
        entered_review=result.entered_review,
        left_review=result.left_review,
        moved_to_done=result.moved_to_done,
        reopened_from_done=result.reopened_from_done,
        cycle_opened=result.cycle_opened,
        cycle_closed=result.cycle_closed,
        cycle_deleted_as_transient=result.cycle_deleted_as_transient,
        card_locked=result.card_locked,
        card_unlocked=result.card_unlocked,
        final_cycle_id=result.final_cycle_id,
        opened_cycle_id=result.opened_cycle_id,
    )


@router.get("/cycles/{cycle_id}/evaluate", response_model=EvaluationFormResponse)
def get_evaluation_form(
    cycle_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
) -> EvaluationFormResponse:
    form = app_api.get_evaluation_form(db, user_id, cycle_id)
    existing = form.existing_evaluation
    return EvaluationFormResponse(
        cycle=FormCycle(id=form.cycle_id, cycle_number=form.cycle_number, locked_at=form.locked_at),
        card=_card(form.card),
        evaluator_roles=[str(role) for role in form.evaluator_roles],
        can_edit=form.can_edit,
        has_existing_evaluation=form.has_existing_evaluation,
        existing_evaluation=(
            EvaluationOut(
                id=existing.id,
                submitted_at=existing.submitted_at,
                updated_at=existing.updated_at,
                scores=[ScoreOut(dimension_id=s.dimension_id, score=s.score) for s in existing.scores],
            )
            if existing
            else None
        ),
        dimensions=[_question(dimension) for dimension in form.dimensions],
        scoring_options=get_settings().review.score_scale().labels,
    )


@router.post(
    "/cycles/{cycle_id}/evaluate",
    response_model=EvaluationReceiptResponse,
    status_code=status.HTTP_201_CREATED,
)
def submit_evaluation(
    cycle_id: int,
    payload: dict[str, Any] = Body(...),
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
) -> EvaluationReceiptResponse:
    try:
        receipt = app_api.submit_evaluation(db, user_id, cycle_id, payload.get("scores"))
        db.commit()
    except Exception:
        db.rollback()
        raise
    return _receipt(receipt)


@router.patch("/cycles/{cycle_id}/evaluate", response_model=EvaluationReceiptResponse)
def update_evaluation(
    cycle_id: int,
    payload: dict[str, Any] = Body(...),
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
) -> EvaluationReceiptResponse:
    try:
        receipt = app_api.update_evaluation(db, user_id, cycle_id, payload.get("scores"))
        db.commit()
    except Exception:
        db.rollback()
        raise
    return _receipt(receipt)


@router.get("/cycles/{cycle_id}/evaluations", response_model=CycleSummaryOut)
def get_cycle_summary(
    cycle_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
) -> CycleSummaryOut:
    return _cycle_summary(app_api.get_cycle_summary(db, user_id, cycle_id))


@router.get("/me/pending-evaluations", response_model=PendingResponse)
def list_pending_evaluations(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
) -> PendingResponse:
    pending = app_api.list_pending_evaluations(db, user_id)
    access = app_api.load_access_context(db, user_id)
    return PendingResponse(
        evaluator_roles=[str(role) for role in access.role_list],
        pending_count=len(pending),
        pending=[
            PendingItem(
                cycle_id=item.cycle_id,
                cycle_number=item.cycle_number,
                opened_at=item.opened_at,
                closed_at=item.closed_at,
                is_in_review=item.is_in_review,
                eligible_dimension_count=len(item.eligible_dimension_ids),
                eligible_dimension_ids=item.eligible_dimension_ids,
                card=PendingCard(
                    id=item.card.id,
                    title=item.card.title,
                    unit_type=item.card.unit_type,
                    board_id=item.card.board_id,
                    board_name=item.board_name,
                ),
            )
            for item in pending
        ],
    )


# ---------- Metrics ----------


@router.get("/metrics/quality-adjusted-velocity", response_model=VelocityResponse)
def get_quality_adjusted_velocity(
    project_id: Optional[int] = Query(None, alias="projectId"),
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
) -> VelocityResponse:
    report = app_api.get_quality_adjusted_velocity(db, user_id, project_id)
    totals = report.totals
    return VelocityResponse(
        project_id=report.project_id,
        multipliers=report.multipliers,
        totals=VelocityTotals(
            done_task_count=totals.task_count,
            scored_task_count=totals.scored_task_count,
            total_raw_points=_round(totals.raw_points),
            total_adjusted_points=_round(totals.adjusted_points),
            total_adjustment_delta=_round(totals.adjustment_delta),
            overall_adjustment_factor=_round_factor(totals.adjustment_factor),
        ),
        series=[
            VelocityWeek(
                week_start=week.week_start,
                per_week=_bucket(week.per_week),
                cumulative=_bucket(week.cumulative),
            )
            for week in report.series
        ],
    )


@router.get("/metrics/projects/{project_id}/quality-summary", response_model=ProjectQualityResponse)
def get_project_quality_summary(
    project_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
) -> ProjectQualityResponse:
    summary = app_api.get_project_quality_summary(db, user_id, project_id)
    metrics = summary.iteration_metrics
    return ProjectQualityResponse(
        project_id=summary.project_id,
        project_name=summary.project_name,
        totals=ProjectTotals(
            done_task_count=summary.done_task_count,
            finalized_task_count=summary.finalized_task_count,
            overall_average=_round(summary.overall_average),
            overall_quality_tier=summary.overall_quality_tier,
        ),
        tier_distribution=summary.tier_distribution,
        trend=[
            TrendPointOut(
                week_start=point.week_start,
                average_quality=_round(point.average_quality),
                sample_size=point.sample_size,
                tier_counts=point.tier_counts,
            )
            for point in summary.trend
        ],
        per_dimension=[_dimension_summary(aggregate) for aggregate in summary.per_dimension],
        iteration_metrics=IterationMetricsOut(
            average_cycles_to_done=_round(metrics.average_cycles_to_done),
            high_churn_threshold=metrics.high_churn_threshold,
            high_churn_count=metrics.high_churn_count,
            high_churn_rate=_round(metrics.high_churn_rate),
        ),
    )


@router.get("/metrics/iteration-distribution", response_model=IterationDistributionResponse)
def get_iteration_distribution(
    project_id: Optional[int] = Query(None, alias="projectId"),
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
) -> IterationDistributionResponse:
    report = app_api.get_iteration_distribution(db, user_id, project_id)
    totals = report.totals
    return IterationDistributionResponse(
        project_id=report.project_id,
        totals=IterationTotalsOut(
            done_task_count=totals.done_task_count,
            scored_task_count=totals.scored_task_count,
            with_review_cycles_count=totals.with_review_cycles_count,
            without_review_cycles_count=totals.without_review_cycles_count,
            average_cycles_to_done=_round(totals.average_cycles_to_done),
            high_churn_threshold=totals.high_churn_threshold,
            high_churn_count=totals.high_churn_count,
            high_churn_rate=_round(totals.high_churn_rate),
        ),
        distribution=[
            IterationBucketOut(
                cycle_count=bucket.cycle_count,
                task_count=bucket.task_count,
                percentage=_round(bucket.percentage),
                scored_task_count=bucket.scored_task_count,
                average_quality=_round(bucket.average_quality),
                quality_tier=bucket.quality_tier,
                total_story_points=_round(bucket.total_story_points),
                tier_distribution=bucket.tier_distribution,
            )
            for bucket in report.distribution
        ],
        correlation=[
            CorrelationPointOut(
                cycle_count=point.cycle_count,
                average_quality=_round(point.average_quality),
                sample_size=point.sample_size,
            )
            for point in report.correlation
        ],
    )


def _finalized_task(task: FinalizedTask) -> FinalizedTaskOut:
    return FinalizedTaskOut(
        cycle_id=task.cycle_id,
        card_id=task.card_id,
        card_title=task.card_title,
        board_id=task.board_id,
        board_name=task.board_name,
        cycle_number=task.cycle_number,
        finalized_at=task.finalized_at,
        week_start=task.week_start,
        overall_average=_round(task.overall_average),
        quality_tier=task.quality_tier,
    )


@router.get("/metrics/users/{subject_user_id}/quality-summary", response_model=UserQualityResponse)
def get_user_quality_summary(
    subject_user_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
) -> UserQualityResponse:
    summary = app_api.get_user_quality_summary(db, user_id, subject_user_id)
    return UserQualityResponse(
        user_id=summary.user_id,
        user_name=summary.user_name,
        totals=UserTotals(
            finalized_task_count=summary.finalized_task_count,
            overall_average=_round(summary.overall_average),
            overall_quality_tier=summary.overall_quality_tier,
        ),
        progression=[_finalized_task(task) for task in summary.progression],
        per_dimension=[_dimension_summary(aggregate) for aggregate in summary.per_dimension],
        latest_finalized=[_finalized_task(task) for task in summary.latest_finalized],
    )
