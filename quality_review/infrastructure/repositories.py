"""
Repository entry point.

Re-exports the split repositories so callers can import them from one place:
    from quality_review.infrastructure.repositories import CycleRepo, DimensionRepo
"""

from __future__ import annotations

from .repositories_cycle import CycleRepo, cycle_to_domain
from .repositories_dimension import DimensionRepo, dimension_to_domain
from .repositories_directory import CardRepo, UserRepo, card_to_unit
from .repositories_evaluation import EvaluationRepo

__all__ = [
    "CardRepo",
    "CycleRepo",
    "DimensionRepo",
    "EvaluationRepo",
    "UserRepo",
    "card_to_unit",
    "cycle_to_domain",
    "dimension_to_domain",
]
