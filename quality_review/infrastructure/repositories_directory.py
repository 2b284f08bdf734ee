"""Read access to the collaborators the engine depends on: users, boards and cards."""

from __future__ import annotations

import builtins
from collections.abc import Iterable

from sqlalchemy.orm import Session, selectinload

from ..domain.models import ReviewableUnit
from .exceptions import CardNotFoundError, ProjectNotFoundError, UserNotFoundError
from .logging import log_database_operation as log_op
from .models import BoardORM, CardORM, UserCompanyRoleORM, UserORM
from .repositories_base import BaseRepository as GenericBaseRepository


def card_to_unit(card: CardORM) -> ReviewableUnit:
    return ReviewableUnit(
        id=card.id,
        unit_type=card.card_type,
        payload=card.payload or {},
        board_id=card.board_id,
        title=card.title,
    )


class UserRepo(GenericBaseRepository[UserORM]):
    model = UserORM
    resource_name = "User"

    def __init__(self, session: Session):
        super().__init__(session)

    @log_op("user.get_required")
    def get_by_id_required(self, id_: int) -> UserORM:
        user = (
            self.s.query(UserORM)
            .options(selectinload(UserORM.company_roles))
            .filter(UserORM.id == id_)
            .one_or_none()
        )
        if user is None:
            raise UserNotFoundError(id_)
        return user

    @log_op("user.role_names_by_user")
    def role_names_by_user(self, user_ids: Iterable[int]) -> dict[int, builtins.list[str]]:
        wanted = set(user_ids)
        names: dict[int, list[str]] = {user_id: [] for user_id in wanted}
        if not wanted:
            return names
        rows = (
            self.s.query(UserCompanyRoleORM.user_id, UserCompanyRoleORM.role_name)
            .filter(UserCompanyRoleORM.user_id.in_(wanted))
            .all()
        )
        for user_id, role_name in rows:
            names[user_id].append(role_name)
        return names


class CardRepo(GenericBaseRepository[CardORM]):
    model = CardORM
    resource_name = "Card"
    not_found = CardNotFoundError

    def __init__(self, session: Session):
        super().__init__(session)

    @log_op("card.board_required")
    def board_required(self, board_id: int) -> BoardORM:
        board = self.s.get(BoardORM, board_id)
        if board is None:
            raise ProjectNotFoundError(board_id)
        return board

    @log_op("card.list_done_tasks")
    def list_done_tasks(
        self, done_phase: str, board_id: int | None = None, card_type: str = "TASK"
    ) -> builtins.list[CardORM]:
        """Live (unarchived) cards of ``card_type`` sitting in the done phase."""
        q = self.s.query(CardORM).filter(
            CardORM.archived_at.is_(None),
            CardORM.card_type == card_type,
            CardORM.phase == done_phase,
        )
        if board_id is not None:
            q = q.filter(CardORM.board_id == board_id)
        return q.order_by(CardORM.id).all()
