"""
Eligibility resolution: which review dimensions apply to a unit and evaluator.

Applicability is dispatched on the unit type tag through ``UNIT_PREDICATES``;
supporting a new unit type means registering one more predicate.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import Any

from .models import EvaluatorRole, ReviewableUnit, ReviewDimension, UnitType

UnitPredicate = Callable[[ReviewDimension, ReviewableUnit], bool]

UNIT_PREDICATES: dict[str, UnitPredicate] = {}

DEFAULT_UNIVERSAL_ROLES: frozenset[EvaluatorRole] = frozenset({EvaluatorRole.HEAD_OF_ART})


def register_unit_predicate(*unit_types: str) -> Callable[[UnitPredicate], UnitPredicate]:
    def decorator(func: UnitPredicate) -> UnitPredicate:
        for unit_type in unit_types:
            UNIT_PREDICATES[str(unit_type)] = func
        return func

    return decorator


def _type_in_scope(dimension: ReviewDimension, unit: ReviewableUnit) -> bool:
    return not dimension.unit_types or unit.unit_type in dimension.unit_types


def _flag_is_set(payload: Mapping[str, Any] | None, flag: str) -> bool:
    if not isinstance(payload, Mapping):
        return False
    return bool(payload.get(flag))


@register_unit_predicate(UnitType.TASK, UnitType.USER_STORY)
def _work_item_predicate(dimension: ReviewDimension, unit: ReviewableUnit) -> bool:
    if not _type_in_scope(dimension, unit):
        return False
    if dimension.required_flag:
        return _flag_is_set(unit.payload, dimension.required_flag)
    return True


@register_unit_predicate(UnitType.EPIC, UnitType.UTILITY)
def _container_predicate(dimension: ReviewDimension, unit: ReviewableUnit) -> bool:
    # payload flags are defined for work items only
    return _type_in_scope(dimension, unit)


def _unknown_unit_predicate(dimension: ReviewDimension, unit: ReviewableUnit) -> bool:
    return not dimension.unit_types and not dimension.required_flag


def applies_to_unit(dimension: ReviewDimension, unit: ReviewableUnit) -> bool:
    predicate = UNIT_PREDICATES.get(str(unit.unit_type), _unknown_unit_predicate)
    return predicate(dimension, unit)


def visible_to_roles(
    dimension: ReviewDimension,
    evaluator_roles: Iterable[EvaluatorRole],
    universal_roles: frozenset[EvaluatorRole] = DEFAULT_UNIVERSAL_ROLES,
) -> bool:
    roles = set(evaluator_roles)
    if roles & universal_roles:
        return True
    if not dimension.roles:
        return True
    return bool(dimension.roles & roles)


def applicable_dimensions(
    unit: ReviewableUnit,
    active_dimensions: Iterable[ReviewDimension],
    evaluator_roles: Iterable[EvaluatorRole] | None = None,
    universal_roles: frozenset[EvaluatorRole] = DEFAULT_UNIVERSAL_ROLES,
) -> list[ReviewDimension]:
    """
    Dimensions applicable to ``unit``, optionally narrowed to an evaluator.

    Without ``evaluator_roles`` (or with an empty set) no role filtering is
    applied, which is what read-only summary views use. Inactive dimensions in
    the input are skipped. The result is ordered by position.
    """
    roles = frozenset(evaluator_roles or ())
    selected = [
        dimension
        for dimension in active_dimensions
        if dimension.is_active
        and applies_to_unit(dimension, unit)
        and (not roles or visible_to_roles(dimension, roles, universal_roles))
    ]
    return sorted(selected, key=lambda dimension: (dimension.position, dimension.id))
