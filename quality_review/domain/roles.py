"""
Role resolution: company role names to evaluator roles.

The mapping is a plain value object so deployments can swap the hint lists or
add exact name overrides without touching the resolution logic.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from .models import EvaluatorRole

_SEPARATORS = re.compile(r"[\s_-]+")


def normalize_role_name(value: str) -> str:
    return _SEPARATORS.sub(" ", value.strip().lower())


@dataclass(frozen=True, slots=True)
class RoleMapping:
    """
    Static company-role → evaluator-role table.

    Resolution per name, in order:
    - an exact (normalized) entry in ``exact_names`` wins outright;
    - a HEAD_OF_ART hint match maps to HEAD_OF_ART only;
    - otherwise PO and LEAD hints are checked independently, so one name may
      yield both roles.

    Unknown names contribute nothing; resolution never raises.

    Example:
        >>> RoleMapping().resolve(["Lead Artist", "Producer"])
        frozenset({<EvaluatorRole.LEAD: 'LEAD'>})
    """

    lead_hints: tuple[str, ...] = ("lead",)
    po_hints: tuple[str, ...] = ("po", "product owner")
    head_of_art_hints: tuple[str, ...] = ("head of art", "headofart")
    exact_names: Mapping[str, EvaluatorRole] = field(default_factory=dict)

    def _is_head_of_art(self, normalized: str) -> bool:
        return normalized == "head art" or any(hint in normalized for hint in self.head_of_art_hints)

    def _is_po(self, normalized: str) -> bool:
        undotted = normalized.replace(".", "")
        return any(
            normalized == hint or hint in normalized or undotted == hint for hint in self.po_hints
        )

    def _is_lead(self, normalized: str) -> bool:
        return any(
            normalized == hint
            or normalized.endswith(f" {hint}")
            or normalized.startswith(f"{hint} ")
            for hint in self.lead_hints
        )

    def roles_for_name(self, role_name: str) -> frozenset[EvaluatorRole]:
        if not isinstance(role_name, str):
            return frozenset()
        normalized = normalize_role_name(role_name)
        if not normalized:
            return frozenset()

        exact = {normalize_role_name(name): role for name, role in self.exact_names.items()}
        if normalized in exact:
            return frozenset({EvaluatorRole(exact[normalized])})

        if self._is_head_of_art(normalized):
            return frozenset({EvaluatorRole.HEAD_OF_ART})

        roles: set[EvaluatorRole] = set()
        if self._is_po(normalized):
            roles.add(EvaluatorRole.PO)
        if self._is_lead(normalized):
            roles.add(EvaluatorRole.LEAD)
        return frozenset(roles)

    def resolve(self, company_role_names: Iterable[str]) -> frozenset[EvaluatorRole]:
        resolved: set[EvaluatorRole] = set()
        for role_name in company_role_names:
            resolved |= self.roles_for_name(role_name)
        return frozenset(resolved)


DEFAULT_ROLE_MAPPING = RoleMapping()


def resolve_evaluator_roles(
    company_role_names: Iterable[str], mapping: RoleMapping | None = None
) -> frozenset[EvaluatorRole]:
    return (mapping or DEFAULT_ROLE_MAPPING).resolve(company_role_names)


def resolve_roles_by_user(
    role_names_by_user: Mapping[int, Iterable[str]], mapping: RoleMapping | None = None
) -> dict[int, frozenset[EvaluatorRole]]:
    mapping = mapping or DEFAULT_ROLE_MAPPING
    return {user_id: mapping.resolve(names) for user_id, names in role_names_by_user.items()}
