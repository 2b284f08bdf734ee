from __future__ import annotations

from datetime import UTC, timedelta

import pytest
from sqlalchemy.orm import Session

from quality_review.application.api import (
    apply_card_transition,
    close_and_lock_card_cycles,
    get_current_card_cycle,
    list_card_cycles,
    transition_card_cycles,
)
from quality_review.domain.lifecycle import Stage, plan_transition
from quality_review.infrastructure.exceptions import CardNotFoundError, ForbiddenError
from quality_review.infrastructure.models import BoardORM, CardORM, ReviewCycleORM
from tests.factories import T0, add_card, add_cycle, add_evaluation, add_user

BACKLOG = Stage()
REVIEW = Stage(in_review=True)
DONE = Stage(done=True)


@pytest.fixture
def card_id(session: Session) -> int:
    board = BoardORM(name="Lifecycle")
    session.add(board)
    session.flush()
    return add_card(session, board.id, "Inventory screen", phase=None).id


def cycles(session: Session, card_id: int) -> list[ReviewCycleORM]:
    return (
        session.query(ReviewCycleORM)
        .filter(ReviewCycleORM.card_id == card_id)
        .order_by(ReviewCycleORM.cycle_number)
        .all()
    )


class TestPlanTransition:
    def test_edge_flags(self):
        result = plan_transition(REVIEW, DONE)
        assert result.left_review and result.moved_to_done
        assert not result.entered_review and not result.reopened_from_done

        reopened = plan_transition(DONE, REVIEW)
        assert reopened.entered_review and reopened.reopened_from_done

    def test_staying_put_changes_nothing(self):
        result = plan_transition(REVIEW, REVIEW)
        assert not (result.entered_review or result.left_review)


class TestTransitions:
    def test_entering_review_opens_the_next_cycle(self, session, card_id):
        result = transition_card_cycles(session, card_id, BACKLOG, REVIEW, now=T0)
        assert result.cycle_opened
        [cycle] = cycles(session, card_id)
        assert cycle.cycle_number == 1
        assert result.opened_cycle_id == cycle.id
        assert cycle.opened_at == T0

    def test_already_open_cycle_is_not_duplicated(self, session, card_id):
        transition_card_cycles(session, card_id, BACKLOG, REVIEW, now=T0)
        again = transition_card_cycles(session, card_id, BACKLOG, REVIEW, now=T0)
        assert not again.cycle_opened
        assert len(cycles(session, card_id)) == 1

    def test_leaving_review_closes_the_cycle(self, session, card_id):
        transition_card_cycles(session, card_id, BACKLOG, REVIEW, now=T0)
        result = transition_card_cycles(
            session, card_id, REVIEW, BACKLOG, now=T0 + timedelta(minutes=5)
        )
        assert result.cycle_closed and not result.cycle_deleted_as_transient
        assert cycles(session, card_id)[0].closed_at == T0 + timedelta(minutes=5)

    def test_bounce_through_review_leaves_no_cycle(self, session, card_id):
        transition_card_cycles(session, card_id, BACKLOG, REVIEW, now=T0)
        result = transition_card_cycles(
            session, card_id, REVIEW, BACKLOG, now=T0 + timedelta(seconds=1)
        )
        assert result.cycle_deleted_as_transient
        assert cycles(session, card_id) == []

    def test_short_cycle_with_evaluations_is_kept(self, session, card_id):
        reviewer = add_user(session, "Lee", "MEMBER", ["Tech Lead"])
        transition_card_cycles(session, card_id, BACKLOG, REVIEW, now=T0)
        add_evaluation(session, cycles(session, card_id)[0].id, reviewer.id, {})
        result = transition_card_cycles(
            session, card_id, REVIEW, BACKLOG, now=T0 + timedelta(seconds=1)
        )
        assert result.cycle_closed
        assert len(cycles(session, card_id)) == 1

    def test_cycle_numbers_increase_across_rounds(self, session, card_id):
        transition_card_cycles(session, card_id, BACKLOG, REVIEW, now=T0)
        transition_card_cycles(session, card_id, REVIEW, BACKLOG, now=T0 + timedelta(hours=1))
        transition_card_cycles(session, card_id, BACKLOG, REVIEW, now=T0 + timedelta(hours=2))
        assert [c.cycle_number for c in cycles(session, card_id)] == [1, 2]

    def test_moving_to_done_finalizes_latest_and_locks_all(self, session, card_id):
        transition_card_cycles(session, card_id, BACKLOG, REVIEW, now=T0)
        transition_card_cycles(session, card_id, REVIEW, BACKLOG, now=T0 + timedelta(hours=1))
        transition_card_cycles(session, card_id, BACKLOG, REVIEW, now=T0 + timedelta(hours=2))
        done_at = T0 + timedelta(hours=3)
        result = transition_card_cycles(session, card_id, REVIEW, DONE, now=done_at)

        first, second = cycles(session, card_id)
        assert result.card_locked and result.cycle_closed
        assert result.final_cycle_id == second.id
        assert (first.is_final, second.is_final) == (False, True)
        assert first.locked_at == second.locked_at == done_at
        assert second.closed_at == done_at

    def test_reopening_clears_final_and_unlocks(self, session, card_id):
        transition_card_cycles(session, card_id, BACKLOG, REVIEW, now=T0)
        transition_card_cycles(session, card_id, REVIEW, DONE, now=T0 + timedelta(hours=1))
        result = transition_card_cycles(session, card_id, DONE, REVIEW, now=T0 + timedelta(hours=2))

        assert result.card_unlocked and result.cycle_opened
        first, second = cycles(session, card_id)
        assert not first.is_final and first.locked_at is None
        assert second.cycle_number == 2 and second.closed_at is None

    def test_done_without_cycles_locks_nothing(self, session, card_id):
        result = transition_card_cycles(session, card_id, BACKLOG, DONE, now=T0)
        assert result.final_cycle_id is None
        assert cycles(session, card_id) == []

    def test_aware_times_are_stored_as_naive_utc(self, session, card_id):
        transition_card_cycles(session, card_id, BACKLOG, REVIEW, now=T0.replace(tzinfo=UTC))
        assert cycles(session, card_id)[0].opened_at == T0


class TestForceComplete:
    def test_close_and_lock(self, session, card_id):
        transition_card_cycles(session, card_id, BACKLOG, REVIEW, now=T0)
        close_and_lock_card_cycles(session, card_id, now=T0 + timedelta(days=1))
        [cycle] = cycles(session, card_id)
        assert cycle.closed_at == cycle.locked_at == T0 + timedelta(days=1)

    def test_unknown_card(self, session):
        with pytest.raises(CardNotFoundError):
            close_and_lock_card_cycles(session, 999)


class TestTransitionAccess:
    def test_evaluator_may_transition(self, session, card_id):
        lead = add_user(session, "Lee", "MEMBER", ["Tech Lead"])
        result = apply_card_transition(session, lead.id, card_id, BACKLOG, REVIEW, now=T0)
        assert result.cycle_opened

    def test_non_evaluator_is_forbidden(self, session, card_id):
        developer = add_user(session, "Dev", "MEMBER", ["Developer"])
        with pytest.raises(ForbiddenError):
            apply_card_transition(session, developer.id, card_id, BACKLOG, REVIEW, now=T0)
        assert cycles(session, card_id) == []


class TestCardCycleListing:
    @pytest.fixture
    def second_cycle(self, session, world):
        session.get(ReviewCycleORM, world.cycle_id).closed_at = T0 + timedelta(hours=4)
        add_evaluation(session, world.cycle_id, world.users["lead"], {world.dimensions["code"]: "HIGH"})
        return add_cycle(session, world.card_id, cycle_number=2, opened_at=T0 + timedelta(days=1))

    def test_cycles_oldest_first_with_own_evaluation_marked(self, session, world, second_cycle):
        result = list_card_cycles(session, world.users["lead"], world.card_id)

        assert result.board_name == "Falcon"
        assert result.card.title == "Login form"
        first, second = result.cycles
        assert (first.cycle_number, second.cycle_number) == (1, 2)
        assert first.evaluations_count == 1
        assert first.has_current_user_evaluation
        assert first.current_user_evaluation_updated_at == T0 + timedelta(hours=1)
        assert second.evaluations_count == 0
        assert not second.has_current_user_evaluation

    def test_other_reviewers_see_no_own_evaluation(self, session, world, second_cycle):
        result = list_card_cycles(session, world.users["po"], world.card_id)
        assert not result.cycles[0].has_current_user_evaluation
        assert result.cycles[0].evaluations_count == 1

    def test_current_is_the_latest_cycle(self, session, world, second_cycle):
        result = get_current_card_cycle(session, world.users["lead"], world.card_id)
        assert [cycle.id for cycle in result.cycles] == [second_cycle.id]
        assert result.current.cycle_number == 2

    def test_card_without_cycles(self, session, world):
        card = add_card(session, world.board_id, "Backlog item", phase=None)
        assert get_current_card_cycle(session, world.users["lead"], card.id).current is None
        assert list_card_cycles(session, world.users["lead"], card.id).cycles == []

    def test_archived_card_is_not_found(self, session, world):
        session.get(CardORM, world.card_id).archived_at = T0
        session.flush()
        with pytest.raises(CardNotFoundError):
            list_card_cycles(session, world.users["lead"], world.card_id)
        with pytest.raises(CardNotFoundError):
            get_current_card_cycle(session, world.users["lead"], world.card_id)

    def test_viewers_are_forbidden(self, session, world):
        with pytest.raises(ForbiddenError):
            list_card_cycles(session, world.users["viewer"], world.card_id)
