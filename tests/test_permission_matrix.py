"""
Permission matrix — structural checks on the declarative policy data.

Tests cover:
  - every project-level cell contains ``admin`` (org-admin override is a superset)
  - cells only name known roles
  - purge is admin-only everywhere
  - conditional and ownership rules point at real cells
"""

import pytest

from tracker.models.auth import OrgRole
from tracker.models.permission_matrix import (
    ADMIN,
    CONDITIONAL_ACTIONS,
    ORG_PERMISSION_MATRIX,
    OWNERSHIP_RULES,
    PERMISSION_MATRIX,
    actions_for,
    entity_types,
)
from tracker.models.project import PROJECT_ROLES
from tracker.models.workflow import ENTITY_MODELS


def _cells():
    for entity_type, actions in PERMISSION_MATRIX.items():
        for action, roles in actions.items():
            yield entity_type, action, roles


class TestMatrixShape:
    @pytest.mark.parametrize("entity_type,action,roles", list(_cells()))
    def test_admin_in_every_cell(self, entity_type, action, roles):
        assert ADMIN in roles, f"{entity_type}.{action} is missing admin"

    @pytest.mark.parametrize("entity_type,action,roles", list(_cells()))
    def test_cells_only_name_project_roles(self, entity_type, action, roles):
        assert roles <= PROJECT_ROLES

    def test_purge_is_admin_only(self):
        for entity_type, actions in PERMISSION_MATRIX.items():
            if "purge" in actions:
                assert actions["purge"] == frozenset({ADMIN}), entity_type

    def test_every_workflow_entity_is_in_matrix(self):
        assert set(ENTITY_MODELS) <= set(entity_types())

    def test_org_matrix_names_org_roles(self):
        org_roles = {r.value for r in OrgRole}
        for area, actions in ORG_PERMISSION_MATRIX.items():
            for action, roles in actions.items():
                assert roles <= org_roles, f"{area}.{action}"


class TestDerivedRules:
    def test_conditional_actions_map_to_real_cells(self):
        for entity_type, rules in CONDITIONAL_ACTIONS.items():
            for action, (_attr, mapping) in rules.items():
                assert action in actions_for(entity_type)
                for cell in mapping.values():
                    assert cell in PERMISSION_MATRIX[entity_type]

    def test_ownership_rules_reference_matrix_actions(self):
        for entity_type, rules in OWNERSHIP_RULES.items():
            for action in rules:
                assert action in PERMISSION_MATRIX[entity_type]

    def test_dual_sign_union_covers_slot_cells(self):
        for entity_type in ("milestones", "deliverables", "variations", "certificates"):
            cells = PERMISSION_MATRIX[entity_type]
            assert cells["sign_as_supplier"] | cells["sign_as_customer"] <= cells["sign"]

    def test_unknown_entity_has_no_actions(self):
        assert actions_for("invoices") == set()
