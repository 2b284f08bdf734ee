from __future__ import annotations

from dataclasses import dataclass

from ..infrastructure.exceptions import ForbiddenError
from .models import EvaluatorRole, PermissionLevel, sort_roles


@dataclass(frozen=True, slots=True)
class AccessContext:
    """Who is calling: permission level plus resolved evaluator roles."""

    user_id: int
    permission: PermissionLevel
    evaluator_roles: frozenset[EvaluatorRole] = frozenset()

    @property
    def is_viewer(self) -> bool:
        return self.permission == PermissionLevel.VIEWER

    @property
    def is_super_admin(self) -> bool:
        return self.permission == PermissionLevel.SUPER_ADMIN

    @property
    def is_evaluator(self) -> bool:
        return bool(self.evaluator_roles)

    @property
    def role_list(self) -> list[EvaluatorRole]:
        return sort_roles(self.evaluator_roles)


def require_non_viewer(context: AccessContext) -> AccessContext:
    if context.is_viewer:
        raise ForbiddenError("Viewer users cannot access quality scores", required="non_viewer")
    return context


def require_evaluator(context: AccessContext) -> AccessContext:
    require_non_viewer(context)
    if not context.is_evaluator:
        raise ForbiddenError(
            "Lead, PO, or Head of Art role required to submit evaluations", required="evaluator"
        )
    return context


def require_summary_viewer(context: AccessContext) -> AccessContext:
    if not context.is_evaluator:
        raise ForbiddenError(
            "Lead, PO, or Head of Art role required to view quality summaries",
            required="summary_viewer",
        )
    return context


def require_super_admin(context: AccessContext) -> AccessContext:
    if not context.is_super_admin:
        raise ForbiddenError("Super Admin access required", required="super_admin")
    return context
