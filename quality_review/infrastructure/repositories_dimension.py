from __future__ import annotations

import builtins
from collections.abc import Iterable
from typing import Any

from sqlalchemy import delete, func
from sqlalchemy.orm import Session, selectinload

from ..domain.models import EvaluatorRole, ReviewDimension, sort_roles
from .exceptions import ConflictError, DimensionNotFoundError, ValidationError
from .logging import log_database_operation as log_op
from .models import DimensionRoleORM, EvaluationScoreORM, ReviewDimensionORM
from .repositories_base import BaseRepository as GenericBaseRepository


def dimension_to_domain(row: ReviewDimensionORM) -> ReviewDimension:
    return ReviewDimension(
        id=row.id,
        name=row.name,
        position=row.position,
        description=row.description,
        is_active=row.is_active,
        roles=frozenset(EvaluatorRole(role.role) for role in row.roles),
        unit_types=tuple(row.unit_types or ()),
        required_flag=row.required_flag,
    )


class DimensionRepo(GenericBaseRepository[ReviewDimensionORM]):
    """
    Review dimensions ("review questions") and their evaluator role sets.

    Example:
        >>> repo = DimensionRepo(session)
        >>> [d.name for d in repo.list_ordered(active_only=True)]
    """

    model = ReviewDimensionORM
    resource_name = "Review question"
    not_found = DimensionNotFoundError

    def __init__(self, session: Session):
        super().__init__(session)

    # -------- Read --------

    @log_op("dimension.list_ordered")
    def list_ordered(self, active_only: bool = False) -> builtins.list[ReviewDimensionORM]:
        q = self.s.query(ReviewDimensionORM).options(selectinload(ReviewDimensionORM.roles))
        if active_only:
            q = q.filter(ReviewDimensionORM.is_active.is_(True))
        return q.order_by(ReviewDimensionORM.position, ReviewDimensionORM.id).all()

    @log_op("dimension.list_by_ids")
    def list_by_ids(self, ids: Iterable[int]) -> builtins.list[ReviewDimensionORM]:
        wanted = set(ids)
        if not wanted:
            return []
        return (
            self.s.query(ReviewDimensionORM)
            .options(selectinload(ReviewDimensionORM.roles))
            .filter(ReviewDimensionORM.id.in_(wanted))
            .all()
        )

    def active_domain(self) -> builtins.list[ReviewDimension]:
        return [dimension_to_domain(row) for row in self.list_ordered(active_only=True)]

    def next_position(self) -> int:
        current = self.s.query(func.max(ReviewDimensionORM.position)).scalar()
        return (current or 0) + 1

    def is_referenced(self, dimension_id: int) -> bool:
        return self.s.query(
            self.s.query(EvaluationScoreORM)
            .filter(EvaluationScoreORM.dimension_id == dimension_id)
            .exists()
        ).scalar()

    # -------- Write --------

    @log_op("dimension.create")
    def create(
        self,
        name: str,
        roles: Iterable[EvaluatorRole],
        description: str | None = None,
        is_active: bool = True,
        unit_types: Iterable[str] | None = None,
        required_flag: str | None = None,
    ) -> ReviewDimensionORM:
        dimension = ReviewDimensionORM(
            name=name,
            description=description,
            is_active=is_active,
            position=self.next_position(),
            unit_types=list(unit_types) if unit_types else None,
            required_flag=required_flag,
        )
        dimension.roles = [DimensionRoleORM(role=str(role)) for role in sort_roles(roles)]
        self.s.add(dimension)
        self.s.flush()
        return dimension

    @log_op("dimension.update")
    def update(self, obj: ReviewDimensionORM, **fields: Any) -> ReviewDimensionORM:
        if "unit_types" in fields:
            fields["unit_types"] = list(fields["unit_types"]) if fields["unit_types"] else None
        return super().update(obj, **fields)

    @log_op("dimension.set_roles")
    def set_roles(
        self, obj: ReviewDimensionORM, roles: Iterable[EvaluatorRole]
    ) -> ReviewDimensionORM:
        self.s.execute(delete(DimensionRoleORM).where(DimensionRoleORM.dimension_id == obj.id))
        self.s.add_all(
            DimensionRoleORM(dimension_id=obj.id, role=str(role)) for role in sort_roles(roles)
        )
        self.s.flush()
        self.s.refresh(obj, ["roles"])
        return obj

    @log_op("dimension.deactivate")
    def deactivate(self, obj: ReviewDimensionORM) -> ReviewDimensionORM:
        return super().update(obj, is_active=False)

    @log_op("dimension.hard_delete")
    def hard_delete(self, obj: ReviewDimensionORM) -> None:
        if self.is_referenced(obj.id):
            raise ConflictError(
                "Review question has recorded scores and cannot be deleted; deactivate it instead",
                details={"dimension_id": obj.id},
            )
        self.delete(obj)

    @log_op("dimension.reorder")
    def reorder(self, ordered_ids: builtins.list[int]) -> builtins.list[ReviewDimensionORM]:
        """Assign positions 1..n; ``ordered_ids`` must be a permutation of every dimension id."""
        rows = self.s.query(ReviewDimensionORM).all()
        by_id = {row.id: row for row in rows}
        if len(ordered_ids) != len(by_id):
            raise ValidationError(
                "question_ids",
                "questionIds must include all existing review questions",
                ordered_ids,
            )
        for dimension_id in ordered_ids:
            if dimension_id not in by_id:
                raise ValidationError(
                    "question_ids", f"Unknown questionId: {dimension_id}", dimension_id
                )
        for index, dimension_id in enumerate(ordered_ids, start=1):
            by_id[dimension_id].position = index
        self.s.flush()
        return self.list_ordered()
