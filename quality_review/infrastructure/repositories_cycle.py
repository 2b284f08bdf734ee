from __future__ import annotations

import builtins
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from ..domain.models import CycleSnapshot, EvaluationSnapshot, ScoreEntry
from .exceptions import CycleNotFoundError
from .logging import log_database_operation as log_op
from .models import CardAssigneeORM, CardORM, EvaluationORM, ReviewCycleORM
from .repositories_base import BaseRepository as GenericBaseRepository


def cycle_to_domain(row: ReviewCycleORM) -> CycleSnapshot:
    return CycleSnapshot(
        id=row.id,
        card_id=row.card_id,
        cycle_number=row.cycle_number,
        opened_at=row.opened_at,
        closed_at=row.closed_at,
        is_final=row.is_final,
        locked_at=row.locked_at,
        evaluations=[
            EvaluationSnapshot(
                reviewer_id=evaluation.reviewer_id,
                scores=[ScoreEntry(score.dimension_id, score.score) for score in evaluation.scores],
            )
            for evaluation in sorted(row.evaluations, key=lambda item: item.id)
        ],
    )


class CycleRepo(GenericBaseRepository[ReviewCycleORM]):
    """
    Review cycles of a card and the lifecycle writes applied to them.

    Every write only flushes; the caller's unit of work commits.
    """

    model = ReviewCycleORM
    resource_name = "Review cycle"

    def __init__(self, session: Session):
        super().__init__(session)

    def _with_scores(self):
        # refresh collections of cycles already in the session; writes are flushed by then
        return (
            self.s.query(ReviewCycleORM)
            .options(selectinload(ReviewCycleORM.evaluations).selectinload(EvaluationORM.scores))
            .populate_existing()
        )

    # -------- Read --------

    @log_op("cycle.get_required")
    def get_by_id_required(self, id_: int) -> ReviewCycleORM:
        obj = self._with_scores().filter(ReviewCycleORM.id == id_).one_or_none()
        if obj is None:
            raise CycleNotFoundError(id_)
        return obj

    @log_op("cycle.list_for_card")
    def list_for_card(self, card_id: int) -> builtins.list[ReviewCycleORM]:
        return (
            self._with_scores()
            .filter(ReviewCycleORM.card_id == card_id)
            .order_by(ReviewCycleORM.cycle_number)
            .all()
        )

    @log_op("cycle.open_for_card")
    def open_for_card(self, card_id: int) -> ReviewCycleORM | None:
        return (
            self.s.query(ReviewCycleORM)
            .filter(ReviewCycleORM.card_id == card_id, ReviewCycleORM.closed_at.is_(None))
            .order_by(ReviewCycleORM.cycle_number.desc())
            .first()
        )

    @log_op("cycle.latest_for_card")
    def latest_for_card(self, card_id: int) -> ReviewCycleORM | None:
        return (
            self.s.query(ReviewCycleORM)
            .filter(ReviewCycleORM.card_id == card_id)
            .order_by(ReviewCycleORM.cycle_number.desc())
            .first()
        )

    @log_op("cycle.final_by_card")
    def final_by_card(self, card_ids: Iterable[int]) -> dict[int, ReviewCycleORM]:
        """Final cycle per card; when legacy data holds several, the highest number wins."""
        wanted = set(card_ids)
        if not wanted:
            return {}
        rows = (
            self._with_scores()
            .filter(ReviewCycleORM.card_id.in_(wanted), ReviewCycleORM.is_final.is_(True))
            .order_by(ReviewCycleORM.card_id, ReviewCycleORM.cycle_number)
            .all()
        )
        return {row.card_id: row for row in rows}

    @log_op("cycle.max_number_by_card")
    def max_number_by_card(self, card_ids: Iterable[int]) -> dict[int, int]:
        """Highest cycle number per card; cards never reviewed are absent."""
        wanted = set(card_ids)
        if not wanted:
            return {}
        rows = (
            self.s.query(ReviewCycleORM.card_id, func.max(ReviewCycleORM.cycle_number))
            .filter(ReviewCycleORM.card_id.in_(wanted))
            .group_by(ReviewCycleORM.card_id)
            .all()
        )
        return {card_id: int(number) for card_id, number in rows}

    def _finalized(self):
        """Final, locked cycles of live cards, oldest lock first."""
        return (
            self._with_scores()
            .join(CardORM, CardORM.id == ReviewCycleORM.card_id)
            .options(selectinload(ReviewCycleORM.card).selectinload(CardORM.board))
            .filter(
                CardORM.archived_at.is_(None),
                ReviewCycleORM.is_final.is_(True),
                ReviewCycleORM.locked_at.is_not(None),
            )
            .order_by(ReviewCycleORM.locked_at, ReviewCycleORM.id)
        )

    @log_op("cycle.list_finalized_for_board")
    def list_finalized_for_board(self, board_id: int) -> builtins.list[ReviewCycleORM]:
        return self._finalized().filter(CardORM.board_id == board_id).all()

    @log_op("cycle.list_finalized_for_assignee")
    def list_finalized_for_assignee(self, user_id: int) -> builtins.list[ReviewCycleORM]:
        assigned = select(CardAssigneeORM.card_id).where(CardAssigneeORM.user_id == user_id)
        return self._finalized().filter(ReviewCycleORM.card_id.in_(assigned)).all()

    @log_op("cycle.list_pending_for_reviewer")
    def list_pending_for_reviewer(self, reviewer_id: int) -> builtins.list[ReviewCycleORM]:
        """Unlocked cycles on live cards the reviewer has not evaluated yet, newest first."""
        already_evaluated = select(EvaluationORM.review_cycle_id).where(
            EvaluationORM.reviewer_id == reviewer_id
        )
        return (
            self.s.query(ReviewCycleORM)
            .join(CardORM, CardORM.id == ReviewCycleORM.card_id)
            .options(selectinload(ReviewCycleORM.card).selectinload(CardORM.board))
            .filter(
                ReviewCycleORM.locked_at.is_(None),
                CardORM.archived_at.is_(None),
                ReviewCycleORM.id.not_in(already_evaluated),
            )
            .order_by(ReviewCycleORM.opened_at.desc(), ReviewCycleORM.id.desc())
            .all()
        )

    # -------- Lifecycle writes --------

    @log_op("cycle.open")
    def open_cycle(self, card_id: int, now: datetime) -> ReviewCycleORM | None:
        """Open cycle ``latest + 1`` unless the card already has an open one."""
        if self.open_for_card(card_id) is not None:
            return None
        latest = self.latest_for_card(card_id)
        cycle_number = (latest.cycle_number if latest else 0) + 1
        return self.create(card_id=card_id, cycle_number=cycle_number, opened_at=now)

    @log_op("cycle.close")
    def close_cycle(
        self, card_id: int, now: datetime, transient_seconds: float
    ) -> tuple[ReviewCycleORM | None, bool]:
        """
        Close the open cycle. A cycle younger than ``transient_seconds`` with no
        evaluations is deleted instead. Returns ``(closed_cycle, deleted_as_transient)``.
        """
        cycle = self.open_for_card(card_id)
        if cycle is None:
            return None, False

        age = (now - cycle.opened_at).total_seconds()
        if age < transient_seconds:
            evaluations = (
                self.s.query(EvaluationORM)
                .filter(EvaluationORM.review_cycle_id == cycle.id)
                .count()
            )
            if evaluations == 0:
                self.delete(cycle)
                return None, True

        self.update(cycle, closed_at=now)
        return cycle, False

    @log_op("cycle.finalize_and_lock")
    def finalize_and_lock(self, card_id: int, now: datetime) -> int | None:
        """Mark the latest cycle final (clearing the others) and lock every unlocked cycle."""
        cycles = self.s.query(ReviewCycleORM).filter(ReviewCycleORM.card_id == card_id).all()
        latest = max(cycles, key=lambda cycle: cycle.cycle_number, default=None)
        for cycle in cycles:
            cycle.is_final = cycle is latest
            if cycle.locked_at is None:
                cycle.locked_at = now
        self.s.flush()
        return latest.id if latest else None

    @log_op("cycle.unlock")
    def clear_final_and_unlock(self, card_id: int) -> None:
        (
            self.s.query(ReviewCycleORM)
            .filter(ReviewCycleORM.card_id == card_id)
            .update({"is_final": False, "locked_at": None}, synchronize_session="fetch")
        )
        self.s.flush()

    @log_op("cycle.close_and_lock")
    def close_and_lock(self, card_id: int, now: datetime) -> None:
        cycles = self.s.query(ReviewCycleORM).filter(ReviewCycleORM.card_id == card_id).all()
        for cycle in cycles:
            if cycle.closed_at is None:
                cycle.closed_at = now
            if cycle.locked_at is None:
                cycle.locked_at = now
        self.s.flush()
