"""
Application API layer: every engine operation, access-gated and logged.

Functions take an open SQLAlchemy session and only flush; the caller owns the
transaction (a web request or a ``UnitOfWork`` block) and commits or rolls back.
All returned numbers are unrounded.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, NoReturn

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..domain.access import (
    AccessContext,
    require_evaluator,
    require_non_viewer,
    require_summary_viewer,
    require_super_admin,
)
from ..domain.eligibility import applicable_dimensions
from ..domain.lifecycle import Stage, TransitionResult, plan_transition
from ..domain.models import (
    Audience,
    CycleSummary,
    EvaluatorRole,
    FinalQuality,
    PermissionLevel,
    ReviewableUnit,
    ReviewDimension,
    ScoreEntry,
    roles_for_audience,
)
from ..domain.iteration import DoneTask, IterationDistribution, iteration_distribution
from ..domain.project_summary import (
    FinalizedCycle,
    ProjectQualitySummary,
    UserQualitySummary,
    summarize_project,
    summarize_user,
)
from ..domain.roles import resolve_roles_by_user
from ..domain.schemas import (
    AudienceInput,
    DimensionCreateInput,
    DimensionUpdateInput,
    ReorderInput,
    RolesInput,
    parse_scores_payload,
    require_valid,
)
from ..domain.services import AggregationService
from ..domain.velocity import CompletedUnit, VelocityReport, quality_adjusted_velocity
from ..infrastructure.config import ReviewConfig, get_settings
from ..infrastructure.exceptions import (
    CardNotFoundError,
    ConflictError,
    CycleLockedError,
    QualityReviewError,
    UnauthorizedError,
    ValidationError,
    create_user_friendly_error_message,
    handle_database_error,
    log_error_details,
)
from ..infrastructure.logging import get_logger, log_operation, set_context
from ..infrastructure.models import CardORM, EvaluationORM, ReviewCycleORM
from ..infrastructure.repositories import (
    CardRepo,
    CycleRepo,
    DimensionRepo,
    EvaluationRepo,
    UserRepo,
    card_to_unit,
    cycle_to_domain,
    dimension_to_domain,
)
from ..infrastructure.repositories_evaluation import DUPLICATE_EVALUATION_MESSAGE

logger = get_logger(__name__)


# ---------- Result types ----------


@dataclass(slots=True)
class EvaluationRecord:
    id: int
    cycle_id: int
    reviewer_id: int
    submitted_at: datetime
    updated_at: datetime
    scores: list[ScoreEntry]


@dataclass(slots=True)
class EvaluationReceipt:
    evaluation: EvaluationRecord
    cycle_number: int
    card_id: int
    card_title: str
    score_count: int


@dataclass(slots=True)
class EvaluationForm:
    cycle_id: int
    cycle_number: int
    locked_at: datetime | None
    card: ReviewableUnit
    evaluator_roles: list[EvaluatorRole]
    can_edit: bool
    existing_evaluation: EvaluationRecord | None
    dimensions: list[ReviewDimension]

    @property
    def has_existing_evaluation(self) -> bool:
        return self.existing_evaluation is not None


@dataclass(slots=True)
class CardQuality:
    card: ReviewableUnit
    dimensions: list[ReviewDimension]
    cycles: list[CycleSummary]

    @property
    def latest_cycle(self) -> CycleSummary | None:
        return self.cycles[-1] if self.cycles else None

    @property
    def final_cycle(self) -> CycleSummary | None:
        finals = [cycle for cycle in self.cycles if cycle.is_final]
        return finals[-1] if finals else None


@dataclass(slots=True)
class PendingEvaluation:
    cycle_id: int
    cycle_number: int
    opened_at: datetime
    closed_at: datetime | None
    card: ReviewableUnit
    board_name: str
    eligible_dimension_ids: list[int] = field(default_factory=list)

    @property
    def is_in_review(self) -> bool:
        return self.closed_at is None


@dataclass(slots=True)
class ReviewQuestionList:
    scoring_options: list[str]
    questions: list[ReviewDimension]


@dataclass(slots=True)
class CycleListing:
    """One cycle of a card as seen by the caller."""

    id: int
    cycle_number: int
    opened_at: datetime
    closed_at: datetime | None
    is_final: bool
    locked_at: datetime | None
    evaluations_count: int
    current_user_evaluation_updated_at: datetime | None = None

    @property
    def has_current_user_evaluation(self) -> bool:
        return self.current_user_evaluation_updated_at is not None


@dataclass(slots=True)
class CardCycles:
    card: ReviewableUnit
    board_name: str
    cycles: list[CycleListing]

    @property
    def current(self) -> CycleListing | None:
        return self.cycles[-1] if self.cycles else None


# ---------- Shared helpers ----------


def review_config() -> ReviewConfig:
    return get_settings().review


def aggregation_service(review: ReviewConfig | None = None) -> AggregationService:
    review = review or review_config()
    return AggregationService(
        scale=review.score_scale(),
        tiers=review.tier_table(),
        confidence=review.confidence_table(),
        divergence_threshold=review.divergence_threshold,
        logger=get_logger("review.aggregation"),
    )


def _as_naive_utc(moment: datetime | None) -> datetime:
    if moment is None:
        return datetime.now(UTC).replace(tzinfo=None)
    if moment.tzinfo is not None:
        return moment.astimezone(UTC).replace(tzinfo=None)
    return moment


def _raise_wrapped(e: Exception, operation: str, context: dict[str, Any]) -> NoReturn:
    """Engine errors pass through; database errors are classified; the rest become internal."""
    error_details = log_error_details(e, context)
    if isinstance(e, QualityReviewError):
        if e.status_code >= 500:
            logger.error(f"{operation} failed", extra=error_details)
        raise e
    logger.error(f"{operation} failed", extra=error_details)
    if isinstance(e, SQLAlchemyError):
        raise handle_database_error(e, operation) from e
    raise QualityReviewError(
        f"{operation} failed: {str(e)}",
        details={"operation": operation},
        user_message=create_user_friendly_error_message(e),
    ) from e


def load_access_context(session: Session, user_id: int | None) -> AccessContext:
    """
    Resolve the caller into an ``AccessContext``.

    Raises:
        UnauthorizedError: no identity was supplied
        UserNotFoundError: the identity does not resolve to a user
    """
    if user_id is None:
        raise UnauthorizedError()
    user = UserRepo(session).get_by_id_required(user_id)
    roles = review_config().role_mapping().resolve(role.role_name for role in user.company_roles)
    set_context(user_id=user.id)
    return AccessContext(
        user_id=user.id, permission=PermissionLevel(user.permission), evaluator_roles=roles
    )


def reviewer_roles_by_user_id(
    session: Session, reviewer_ids: Iterable[int]
) -> dict[int, frozenset[EvaluatorRole]]:
    names = UserRepo(session).role_names_by_user(reviewer_ids)
    return resolve_roles_by_user(names, review_config().role_mapping())


def eligible_dimensions_for(
    session: Session, unit: ReviewableUnit, evaluator_roles: Iterable[EvaluatorRole] | None
) -> list[ReviewDimension]:
    return applicable_dimensions(
        unit,
        DimensionRepo(session).active_domain(),
        evaluator_roles,
        review_config().universal_role_set(),
    )


def _summary_dimensions(
    session: Session, unit: ReviewableUnit, cycles: Iterable[ReviewCycleORM]
) -> list[ReviewDimension]:
    """Dimensions a summary is computed over: applicable ones plus any already scored."""
    dimensions = eligible_dimensions_for(session, unit, None)
    known = {dimension.id for dimension in dimensions}
    referenced = {
        score.dimension_id
        for cycle in cycles
        for evaluation in cycle.evaluations
        for score in evaluation.scores
    }
    extra = DimensionRepo(session).list_by_ids(referenced - known)
    return dimensions + [dimension_to_domain(row) for row in extra]


def _summarize(
    session: Session, unit: ReviewableUnit, cycles: list[ReviewCycleORM]
) -> list[CycleSummary]:
    dimensions = _summary_dimensions(session, unit, cycles)
    roles = reviewer_roles_by_user_id(
        session,
        {evaluation.reviewer_id for cycle in cycles for evaluation in cycle.evaluations},
    )
    service = aggregation_service()
    return [service.aggregate(cycle_to_domain(cycle), dimensions, roles) for cycle in cycles]


def _live_card(session: Session, card_id: int) -> CardORM:
    card = CardRepo(session).get_by_id_required(card_id)
    if card.archived_at is not None:
        raise CardNotFoundError(card_id)
    return card


def _cycle_listing(cycle: ReviewCycleORM, user_id: int) -> CycleListing:
    own = next((e for e in cycle.evaluations if e.reviewer_id == user_id), None)
    return CycleListing(
        id=cycle.id,
        cycle_number=cycle.cycle_number,
        opened_at=cycle.opened_at,
        closed_at=cycle.closed_at,
        is_final=cycle.is_final,
        locked_at=cycle.locked_at,
        evaluations_count=len(cycle.evaluations),
        current_user_evaluation_updated_at=own.updated_at if own else None,
    )


def _evaluation_record(evaluation: EvaluationORM) -> EvaluationRecord:
    return EvaluationRecord(
        id=evaluation.id,
        cycle_id=evaluation.review_cycle_id,
        reviewer_id=evaluation.reviewer_id,
        submitted_at=evaluation.submitted_at,
        updated_at=evaluation.updated_at,
        scores=[ScoreEntry(score.dimension_id, score.score) for score in evaluation.scores],
    )


# ---------- Review questions ----------


@log_operation("list_review_questions")
def list_review_questions(session: Session, user_id: int | None) -> ReviewQuestionList:
    """All dimensions (active and inactive) by position, plus the scoring options."""
    try:
        require_non_viewer(load_access_context(session, user_id))
        rows = DimensionRepo(session).list_ordered()
        return ReviewQuestionList(
            scoring_options=review_config().score_scale().labels,
            questions=[dimension_to_domain(row) for row in rows],
        )
    except Exception as e:
        _raise_wrapped(e, "list_review_questions", {"user_id": user_id})


@log_operation("create_review_question")
def create_review_question(
    session: Session, user_id: int | None, data: dict[str, Any]
) -> ReviewDimension:
    """
    Create a review question at the end of the ordering.

    Roles come from ``roles`` when given (an empty list opens the question to
    every evaluator), else from ``audience``, defaulting to BOTH.

    Example:
        >>> create_review_question(session, 1, {"name": "Readability", "audience": "LEAD"})
    """
    try:
        require_super_admin(load_access_context(session, user_id))
        validated = require_valid(DimensionCreateInput, data)
        if validated.roles is not None:
            roles = frozenset(validated.roles)
        else:
            roles = roles_for_audience(validated.audience or Audience.BOTH)

        row = DimensionRepo(session).create(
            name=validated.name,
            roles=roles,
            description=validated.description,
            is_active=validated.is_active,
            unit_types=validated.unit_types,
            required_flag=validated.required_flag,
        )
        logger.info(f"Created review question {row.id} at position {row.position}")
        return dimension_to_domain(row)
    except Exception as e:
        _raise_wrapped(e, "create_review_question", {"user_id": user_id})


@log_operation("update_review_question")
def update_review_question(
    session: Session, user_id: int | None, dimension_id: int, data: dict[str, Any]
) -> ReviewDimension:
    try:
        require_super_admin(load_access_context(session, user_id))
        repo = DimensionRepo(session)
        row = repo.get_by_id_required(dimension_id)

        validated = require_valid(DimensionUpdateInput, data)
        provided = validated.model_fields_set
        if not provided:
            raise ValidationError("body", "No valid fields provided for update", data)
        if "name" in provided and validated.name is None:
            raise ValidationError("name", "Question name must be a non-empty string")
        if "is_active" in provided and validated.is_active is None:
            raise ValidationError("is_active", "isActive must be a boolean")

        changes = {name: getattr(validated, name) for name in provided}
        if changes.get("description") is not None and not changes["description"].strip():
            changes["description"] = None
        repo.update(row, **changes)
        return dimension_to_domain(row)
    except Exception as e:
        _raise_wrapped(e, "update_review_question", {"dimension_id": dimension_id})


@log_operation("delete_review_question")
def delete_review_question(
    session: Session, user_id: int | None, dimension_id: int, hard: bool = False
) -> dict[str, Any]:
    """
    Deactivate a question, or remove it when ``hard`` is set.

    Raises:
        ConflictError: hard delete of a question that already has scores
    """
    try:
        require_super_admin(load_access_context(session, user_id))
        repo = DimensionRepo(session)
        row = repo.get_by_id_required(dimension_id)
        if hard:
            repo.hard_delete(row)
            return {"id": dimension_id, "deleted": True, "deactivated": False}
        repo.deactivate(row)
        return {"id": dimension_id, "deleted": False, "deactivated": True}
    except Exception as e:
        _raise_wrapped(e, "delete_review_question", {"dimension_id": dimension_id, "hard": hard})


@log_operation("reorder_review_questions")
def reorder_review_questions(
    session: Session, user_id: int | None, dimension_ids: list[int]
) -> list[ReviewDimension]:
    """Positions become 1..n in the given order; every existing question must be listed once."""
    try:
        require_super_admin(load_access_context(session, user_id))
        validated = require_valid(ReorderInput, {"dimension_ids": dimension_ids})
        rows = DimensionRepo(session).reorder(validated.dimension_ids)
        return [dimension_to_domain(row) for row in rows]
    except Exception as e:
        _raise_wrapped(e, "reorder_review_questions", {"user_id": user_id})


@log_operation("set_review_question_audience")
def set_review_question_audience(
    session: Session, user_id: int | None, dimension_id: int, audience: Any
) -> ReviewDimension:
    try:
        require_super_admin(load_access_context(session, user_id))
        validated = require_valid(AudienceInput, {"audience": audience})
        repo = DimensionRepo(session)
        row = repo.set_roles(repo.get_by_id_required(dimension_id), roles_for_audience(validated.audience))
        return dimension_to_domain(row)
    except Exception as e:
        _raise_wrapped(e, "set_review_question_audience", {"dimension_id": dimension_id})


@log_operation("set_review_question_roles")
def set_review_question_roles(
    session: Session, user_id: int | None, dimension_id: int, roles: Any
) -> ReviewDimension:
    try:
        require_super_admin(load_access_context(session, user_id))
        validated = require_valid(RolesInput, {"roles": roles})
        repo = DimensionRepo(session)
        row = repo.set_roles(repo.get_by_id_required(dimension_id), validated.roles)
        return dimension_to_domain(row)
    except Exception as e:
        _raise_wrapped(e, "set_review_question_roles", {"dimension_id": dimension_id})


# ---------- Evaluations ----------


def _checked_scores(
    session: Session, access: AccessContext, cycle_id: int, raw_scores: Any
) -> tuple[ReviewCycleORM, CardORM, list[ScoreEntry]]:
    """Run the shared write preconditions in order and return the parsed scores."""
    scores = parse_scores_payload(raw_scores, review_config().score_scale())
    cycle = CycleRepo(session).get_by_id_required(cycle_id)
    set_context(cycle_id=cycle.id, card_id=cycle.card_id)
    if cycle.locked_at is not None:
        raise CycleLockedError(cycle.id)

    card = CardRepo(session).get_by_id_required(cycle.card_id)
    eligible = eligible_dimensions_for(session, card_to_unit(card), access.evaluator_roles)
    if not eligible:
        raise ValidationError(
            "scores",
            "No eligible review dimensions are configured for this card and evaluator role",
        )
    eligible_ids = {dimension.id for dimension in eligible}
    for entry in scores:
        if entry.dimension_id not in eligible_ids:
            raise ValidationError(
                "dimensionId",
                f"Dimension {entry.dimension_id} is not eligible for this evaluator on this card",
                entry.dimension_id,
            )
    return cycle, card, scores


@log_operation("get_evaluation_form")
def get_evaluation_form(session: Session, user_id: int | None, cycle_id: int) -> EvaluationForm:
    """What the caller may score on a cycle, and what they already scored."""
    try:
        access = require_evaluator(load_access_context(session, user_id))
        cycle = CycleRepo(session).get_by_id_required(cycle_id)
        card = CardRepo(session).get_by_id_required(cycle.card_id)
        unit = card_to_unit(card)
        eligible = eligible_dimensions_for(session, unit, access.evaluator_roles)
        existing = EvaluationRepo(session).find(cycle.id, access.user_id)
        return EvaluationForm(
            cycle_id=cycle.id,
            cycle_number=cycle.cycle_number,
            locked_at=cycle.locked_at,
            card=unit,
            evaluator_roles=access.role_list,
            can_edit=cycle.locked_at is None and bool(eligible),
            existing_evaluation=_evaluation_record(existing) if existing else None,
            dimensions=eligible,
        )
    except Exception as e:
        _raise_wrapped(e, "get_evaluation_form", {"cycle_id": cycle_id, "user_id": user_id})


@log_operation("submit_evaluation")
def submit_evaluation(
    session: Session, user_id: int | None, cycle_id: int, raw_scores: Any
) -> EvaluationReceipt:
    """
    Create the caller's evaluation for a cycle.

    Raises:
        ForbiddenError: caller holds no evaluator role, or the cycle is locked
        ValidationError: malformed payload or ineligible dimension
        CycleNotFoundError: unknown cycle
        ConflictError: the caller already evaluated this cycle
    """
    try:
        access = require_evaluator(load_access_context(session, user_id))
        cycle, card, scores = _checked_scores(session, access, cycle_id, raw_scores)

        repo = EvaluationRepo(session)
        if repo.find(cycle.id, access.user_id) is not None:
            raise ConflictError(
                DUPLICATE_EVALUATION_MESSAGE,
                details={"cycle_id": cycle.id, "reviewer_id": access.user_id},
            )
        evaluation = repo.create_with_scores(cycle.id, access.user_id, scores, _as_naive_utc(None))
        logger.info(f"Reviewer {access.user_id} scored {len(scores)} dimensions on cycle {cycle.id}")
        return EvaluationReceipt(
            evaluation=_evaluation_record(evaluation),
            cycle_number=cycle.cycle_number,
            card_id=card.id,
            card_title=card.title,
            score_count=len(scores),
        )
    except Exception as e:
        _raise_wrapped(e, "submit_evaluation", {"cycle_id": cycle_id, "user_id": user_id})


@log_operation("update_evaluation")
def update_evaluation(
    session: Session, user_id: int | None, cycle_id: int, raw_scores: Any
) -> EvaluationReceipt:
    """Replace the caller's score set; ``submitted_at`` is kept."""
    try:
        access = require_evaluator(load_access_context(session, user_id))
        cycle, card, scores = _checked_scores(session, access, cycle_id, raw_scores)

        repo = EvaluationRepo(session)
        existing = repo.find_required(cycle.id, access.user_id)
        evaluation = repo.replace_scores(existing, scores, _as_naive_utc(None))
        return EvaluationReceipt(
            evaluation=_evaluation_record(evaluation),
            cycle_number=cycle.cycle_number,
            card_id=card.id,
            card_title=card.title,
            score_count=len(scores),
        )
    except Exception as e:
        _raise_wrapped(e, "update_evaluation", {"cycle_id": cycle_id, "user_id": user_id})


@log_operation("list_pending_evaluations")
def list_pending_evaluations(session: Session, user_id: int | None) -> list[PendingEvaluation]:
    """Unlocked cycles the caller has not evaluated and has at least one dimension to score on."""
    try:
        access = require_evaluator(load_access_context(session, user_id))
        active = DimensionRepo(session).active_domain()
        universal = review_config().universal_role_set()

        pending: list[PendingEvaluation] = []
        for cycle in CycleRepo(session).list_pending_for_reviewer(access.user_id):
            unit = card_to_unit(cycle.card)
            eligible = applicable_dimensions(unit, active, access.evaluator_roles, universal)
            if not eligible:
                continue
            pending.append(
                PendingEvaluation(
                    cycle_id=cycle.id,
                    cycle_number=cycle.cycle_number,
                    opened_at=cycle.opened_at,
                    closed_at=cycle.closed_at,
                    card=unit,
                    board_name=cycle.card.board.name,
                    eligible_dimension_ids=[dimension.id for dimension in eligible],
                )
            )
        return pending
    except Exception as e:
        _raise_wrapped(e, "list_pending_evaluations", {"user_id": user_id})


# ---------- Summaries and metrics ----------


@log_operation("get_cycle_summary")
def get_cycle_summary(session: Session, user_id: int | None, cycle_id: int) -> CycleSummary:
    try:
        require_non_viewer(load_access_context(session, user_id))
        cycle = CycleRepo(session).get_by_id_required(cycle_id)
        card = CardRepo(session).get_by_id_required(cycle.card_id)
        return _summarize(session, card_to_unit(card), [cycle])[0]
    except Exception as e:
        _raise_wrapped(e, "get_cycle_summary", {"cycle_id": cycle_id})


@log_operation("get_card_quality")
def get_card_quality(session: Session, user_id: int | None, card_id: int) -> CardQuality:
    """Every cycle of a card summarized, with latest and final views."""
    try:
        require_non_viewer(load_access_context(session, user_id))
        card = _live_card(session, card_id)
        unit = card_to_unit(card)
        cycles = CycleRepo(session).list_for_card(card.id)
        return CardQuality(
            card=unit,
            dimensions=eligible_dimensions_for(session, unit, None),
            cycles=_summarize(session, unit, cycles),
        )
    except Exception as e:
        _raise_wrapped(e, "get_card_quality", {"card_id": card_id})


@log_operation("list_card_cycles")
def list_card_cycles(session: Session, user_id: int | None, card_id: int) -> CardCycles:
    """Every cycle of a live card, oldest first, with the caller's own evaluation marked."""
    try:
        access = require_non_viewer(load_access_context(session, user_id))
        card = _live_card(session, card_id)
        return CardCycles(
            card=card_to_unit(card),
            board_name=card.board.name,
            cycles=[
                _cycle_listing(cycle, access.user_id)
                for cycle in CycleRepo(session).list_for_card(card.id)
            ],
        )
    except Exception as e:
        _raise_wrapped(e, "list_card_cycles", {"card_id": card_id})


@log_operation("get_current_card_cycle")
def get_current_card_cycle(session: Session, user_id: int | None, card_id: int) -> CardCycles:
    """The card with only its latest cycle (if any) in ``cycles``."""
    try:
        access = require_non_viewer(load_access_context(session, user_id))
        card = _live_card(session, card_id)
        latest = CycleRepo(session).latest_for_card(card.id)
        return CardCycles(
            card=card_to_unit(card),
            board_name=card.board.name,
            cycles=[_cycle_listing(latest, access.user_id)] if latest else [],
        )
    except Exception as e:
        _raise_wrapped(e, "get_current_card_cycle", {"card_id": card_id})


def final_quality_by_card(session: Session, card_ids: Iterable[int]) -> dict[int, FinalQuality]:
    finals = CycleRepo(session).final_by_card(card_ids)
    referenced = {
        score.dimension_id
        for cycle in finals.values()
        for evaluation in cycle.evaluations
        for score in evaluation.scores
    }
    dimensions = [dimension_to_domain(row) for row in DimensionRepo(session).list_by_ids(referenced)]
    service = aggregation_service()
    return {
        card_id: service.final_quality(cycle_to_domain(cycle), dimensions)
        for card_id, cycle in finals.items()
    }


@log_operation("get_quality_adjusted_velocity")
def get_quality_adjusted_velocity(
    session: Session, user_id: int | None, project_id: int | None = None
) -> VelocityReport:
    try:
        require_summary_viewer(load_access_context(session, user_id))
        review = review_config()
        cards = CardRepo(session).list_done_tasks(review.done_phase, board_id=project_id)
        finals = final_quality_by_card(session, [card.id for card in cards])
        units = [
            CompletedUnit(
                card_id=card.id,
                completed_at=card.completed_at or card.updated_at,
                payload=card.payload,
                board_id=card.board_id,
            )
            for card in cards
        ]
        return quality_adjusted_velocity(units, finals, review.velocity_multipliers, project_id)
    except Exception as e:
        _raise_wrapped(e, "get_quality_adjusted_velocity", {"project_id": project_id})


@log_operation("get_project_quality_summary")
def get_project_quality_summary(
    session: Session, user_id: int | None, project_id: int
) -> ProjectQualitySummary:
    try:
        require_summary_viewer(load_access_context(session, user_id))
        review = review_config()
        board = CardRepo(session).board_required(project_id)
        done_cards = CardRepo(session).list_done_tasks(review.done_phase, board_id=board.id)
        finalized = [
            FinalizedCycle(
                cycle=cycle_to_domain(cycle),
                card_title=cycle.card.title,
                dimensions=_summary_dimensions(session, card_to_unit(cycle.card), [cycle]),
            )
            for cycle in CycleRepo(session).list_finalized_for_board(board.id)
        ]
        return summarize_project(
            project_id=board.id,
            project_name=board.name,
            done_card_ids=[card.id for card in done_cards],
            finalized=finalized,
            active_dimensions=DimensionRepo(session).active_domain(),
            service=aggregation_service(review),
            high_churn_threshold=review.high_churn_threshold,
        )
    except Exception as e:
        _raise_wrapped(e, "get_project_quality_summary", {"project_id": project_id})


@log_operation("get_iteration_distribution")
def get_iteration_distribution(
    session: Session, user_id: int | None, project_id: int | None = None
) -> IterationDistribution:
    try:
        require_summary_viewer(load_access_context(session, user_id))
        review = review_config()
        cards = CardRepo(session).list_done_tasks(review.done_phase, board_id=project_id)
        card_ids = [card.id for card in cards]
        return iteration_distribution(
            [DoneTask(card_id=card.id, payload=card.payload) for card in cards],
            CycleRepo(session).max_number_by_card(card_ids),
            final_quality_by_card(session, card_ids),
            tiers=review.tier_table(),
            high_churn_threshold=review.high_churn_threshold,
            project_id=project_id,
        )
    except Exception as e:
        _raise_wrapped(e, "get_iteration_distribution", {"project_id": project_id})


@log_operation("get_user_quality_summary")
def get_user_quality_summary(
    session: Session, user_id: int | None, subject_user_id: int
) -> UserQualitySummary:
    """Final-cycle quality of the cards assigned to ``subject_user_id``."""
    try:
        require_summary_viewer(load_access_context(session, user_id))
        subject = UserRepo(session).get_by_id_required(subject_user_id)
        finalized = [
            FinalizedCycle(
                cycle=cycle_to_domain(cycle),
                card_title=cycle.card.title,
                dimensions=_summary_dimensions(session, card_to_unit(cycle.card), [cycle]),
                board_id=cycle.card.board_id,
                board_name=cycle.card.board.name,
            )
            for cycle in CycleRepo(session).list_finalized_for_assignee(subject.id)
        ]
        return summarize_user(
            user_id=subject.id,
            user_name=subject.name,
            finalized=finalized,
            active_dimensions=DimensionRepo(session).active_domain(),
            service=aggregation_service(),
        )
    except Exception as e:
        _raise_wrapped(e, "get_user_quality_summary", {"subject_user_id": subject_user_id})


# ---------- Lifecycle ----------


def transition_card_cycles(
    session: Session,
    card_id: int,
    from_stage: Stage,
    to_stage: Stage,
    now: datetime | None = None,
) -> TransitionResult:
    """
    Apply the cycle side effects of moving a card between workflow stages.

    No access check; callers that act for a user go through ``apply_card_transition``.
    """
    now = _as_naive_utc(now)
    repo = CycleRepo(session)
    result = plan_transition(from_stage, to_stage)
    set_context(card_id=card_id)

    if result.entered_review:
        opened = repo.open_cycle(card_id, now)
        result.cycle_opened = opened is not None
        result.opened_cycle_id = opened.id if opened else None

    if result.left_review:
        closed, deleted = repo.close_cycle(card_id, now, review_config().transient_cycle_seconds)
        result.cycle_closed = closed is not None
        result.cycle_deleted_as_transient = deleted

    if result.moved_to_done:
        result.final_cycle_id = repo.finalize_and_lock(card_id, now)
        result.card_locked = True

    if result.reopened_from_done:
        repo.clear_final_and_unlock(card_id)
        result.card_unlocked = True

    logger.info(
        f"Card {card_id} transition: opened={result.cycle_opened} closed={result.cycle_closed} "
        f"locked={result.card_locked} unlocked={result.card_unlocked}"
    )
    return result


@log_operation("apply_card_transition")
def apply_card_transition(
    session: Session,
    user_id: int | None,
    card_id: int,
    from_stage: Stage,
    to_stage: Stage,
    now: datetime | None = None,
) -> TransitionResult:
    try:
        require_evaluator(load_access_context(session, user_id))
        CardRepo(session).get_by_id_required(card_id)
        return transition_card_cycles(session, card_id, from_stage, to_stage, now)
    except Exception as e:
        _raise_wrapped(e, "apply_card_transition", {"card_id": card_id})


@log_operation("close_and_lock_card_cycles")
def close_and_lock_card_cycles(session: Session, card_id: int, now: datetime | None = None) -> None:
    """Force-complete a card: close any open cycle and lock them all."""
    try:
        CardRepo(session).get_by_id_required(card_id)
        CycleRepo(session).close_and_lock(card_id, _as_naive_utc(now))
    except Exception as e:
        _raise_wrapped(e, "close_and_lock_card_cycles", {"card_id": card_id})
