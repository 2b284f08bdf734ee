from __future__ import annotations

from quality_review.domain.models import EvaluatorRole
from quality_review.domain.roles import (
    RoleMapping,
    normalize_role_name,
    resolve_evaluator_roles,
    resolve_roles_by_user,
)

LEAD = EvaluatorRole.LEAD
PO = EvaluatorRole.PO
HEAD_OF_ART = EvaluatorRole.HEAD_OF_ART


class TestRoleNameNormalization:
    def test_separators_collapse_to_single_space(self):
        assert normalize_role_name("  Head_of-Art ") == "head of art"
        assert normalize_role_name("Tech   Lead") == "tech lead"


class TestRoleMapping:
    def test_mixed_role_names_resolve_to_every_evaluator_role(self):
        resolved = resolve_evaluator_roles(
            ["Lead Artist", "Product Owner", "Head of Art", "PO.", "Administrator", "Leadership coach"]
        )
        assert resolved == frozenset({LEAD, PO, HEAD_OF_ART})

    def test_lead_hint_must_be_a_whole_word_at_either_end(self):
        mapping = RoleMapping()
        assert mapping.roles_for_name("Tech Lead") == {LEAD}
        assert mapping.roles_for_name("lead") == {LEAD}
        assert mapping.roles_for_name("Leadership coach") == frozenset()

    def test_head_of_art_maps_to_head_of_art_only(self):
        assert RoleMapping().roles_for_name("Head of Art Lead") == {HEAD_OF_ART}

    def test_one_name_can_yield_lead_and_po(self):
        assert RoleMapping().roles_for_name("Product Owner Lead") == {LEAD, PO}

    def test_unknown_and_invalid_names_contribute_nothing(self):
        mapping = RoleMapping()
        assert mapping.roles_for_name("Developer") == frozenset()
        assert mapping.roles_for_name("") == frozenset()
        assert mapping.roles_for_name(None) == frozenset()  # type: ignore[arg-type]
        assert mapping.resolve([]) == frozenset()

    def test_exact_names_win_over_hints(self):
        mapping = RoleMapping(exact_names={"Art Director": HEAD_OF_ART, "Tech Lead": PO})
        assert mapping.roles_for_name("art director") == {HEAD_OF_ART}
        assert mapping.roles_for_name("Tech Lead") == {PO}

    def test_custom_hint_lists(self):
        mapping = RoleMapping(lead_hints=("captain",), po_hints=("owner",))
        assert mapping.resolve(["Team Captain", "Owner"]) == {LEAD, PO}
        assert mapping.resolve(["Tech Lead"]) == frozenset()

    def test_resolution_is_order_independent(self):
        names = ["Product Owner", "Tech Lead", "Head of Art"]
        assert resolve_evaluator_roles(names) == resolve_evaluator_roles(list(reversed(names)))


class TestRolesByUser:
    def test_maps_each_user_independently(self):
        resolved = resolve_roles_by_user({1: ["Tech Lead"], 2: ["Product Owner"], 3: []})
        assert resolved == {1: {LEAD}, 2: {PO}, 3: frozenset()}
