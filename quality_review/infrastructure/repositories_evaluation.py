from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from ..domain.models import ScoreEntry
from .exceptions import ConflictError, EvaluationNotFoundError
from .logging import log_database_operation as log_op
from .models import EvaluationORM, EvaluationScoreORM
from .repositories_base import BaseRepository as GenericBaseRepository

DUPLICATE_EVALUATION_MESSAGE = (
    "Evaluation already exists for this cycle. Use PATCH to update your evaluation."
)


class EvaluationRepo(GenericBaseRepository[EvaluationORM]):
    """One reviewer's scores for one cycle."""

    model = EvaluationORM
    resource_name = "Evaluation"

    def __init__(self, session: Session):
        super().__init__(session)

    @log_op("evaluation.find")
    def find(self, cycle_id: int, reviewer_id: int) -> EvaluationORM | None:
        return (
            self.s.query(EvaluationORM)
            .options(selectinload(EvaluationORM.scores))
            .filter(
                EvaluationORM.review_cycle_id == cycle_id,
                EvaluationORM.reviewer_id == reviewer_id,
            )
            .one_or_none()
        )

    def find_required(self, cycle_id: int, reviewer_id: int) -> EvaluationORM:
        evaluation = self.find(cycle_id, reviewer_id)
        if evaluation is None:
            raise EvaluationNotFoundError(cycle_id, reviewer_id)
        return evaluation

    @log_op("evaluation.create")
    def create_with_scores(
        self, cycle_id: int, reviewer_id: int, scores: Iterable[ScoreEntry], now: datetime
    ) -> EvaluationORM:
        """
        Insert the evaluation and its scores in the caller's transaction.

        A duplicate (cycle, reviewer) pair, including one inserted by a racing
        request, surfaces as ``ConflictError``.
        """
        evaluation = EvaluationORM(
            review_cycle_id=cycle_id,
            reviewer_id=reviewer_id,
            submitted_at=now,
            updated_at=now,
        )
        evaluation.scores = [
            EvaluationScoreORM(dimension_id=entry.dimension_id, score=entry.score) for entry in scores
        ]
        self.s.add(evaluation)
        try:
            self.s.flush()
        except IntegrityError as e:
            raise ConflictError(
                DUPLICATE_EVALUATION_MESSAGE,
                details={"cycle_id": cycle_id, "reviewer_id": reviewer_id},
            ) from e
        return evaluation

    @log_op("evaluation.replace_scores")
    def replace_scores(
        self, evaluation: EvaluationORM, scores: Iterable[ScoreEntry], now: datetime
    ) -> EvaluationORM:
        """Delete-then-insert the score set; ``submitted_at`` stays, ``updated_at`` moves."""
        self.s.execute(
            delete(EvaluationScoreORM).where(EvaluationScoreORM.evaluation_id == evaluation.id)
        )
        self.s.add_all(
            EvaluationScoreORM(
                evaluation_id=evaluation.id, dimension_id=entry.dimension_id, score=entry.score
            )
            for entry in scores
        )
        evaluation.updated_at = now
        self.s.flush()
        self.s.refresh(evaluation, ["scores"])
        return evaluation
