"""
Variation application tests.

Tests cover:
  - the variation scenario: +2,000 on a locked 10,000 milestone → 12,000, v2
  - only impacted working fields move
  - idempotent re-application
  - submit guards (no milestones, unlocked baseline) and rejection
  - drafting through the service layer
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from tests import factories
from tracker.core.exceptions import (
    AlreadyInTerminalState,
    IllegalTransition,
    MissingPrerequisite,
    PermissionDenied,
    ValidationError,
)
from tracker.models import db
from tracker.models.baseline import BaselineVersion
from tracker.models.workflow import Milestone, Variation
from tracker.services import baseline_service, variation_service
from tracker.services.workflow_engine import attempt_transition


def _locked_milestone(team, **kwargs):
    m = factories.make_milestone(team.project, **kwargs)
    attempt_transition("milestones", m.id, "sign", team.id_for("supplier_pm"))
    attempt_transition("milestones", m.id, "sign", team.id_for("customer_pm"))
    return m


def _approve(team, variation):
    attempt_transition("variations", variation.id, "submit", team.id_for("supplier_pm"))
    attempt_transition("variations", variation.id, "sign", team.id_for("supplier_pm"))
    return attempt_transition("variations", variation.id, "sign", team.id_for("customer_pm"))


class TestApplication:
    def test_cost_variation_scenario(self, team):
        m = _locked_milestone(team, billable="10000")
        variation = factories.make_variation(team.project, team.supplier_pm, affects=[(m, 2000, None, None)])

        result = _approve(team, variation)
        assert result.previous_state == "awaiting_customer_sign"
        assert result.new_state == "applied"
        assert "variation_approved" in result.applied_side_effects
        assert f"baseline_version:{m.id}:v2" in result.applied_side_effects

        db.session.expire_all()
        milestone = db.session.get(Milestone, m.id)
        assert milestone.billable == Decimal("12000")
        assert milestone.baseline_billable == Decimal("12000")
        assert baseline_service.current_baseline(m.id).baseline_billable == Decimal("12000")

        history = baseline_service.baseline_history(m.id)
        assert [v.version for v in history] == [1, 2]
        assert history[1].variation_id == variation.id
        assert history[1].cost_delta == Decimal("2000")
        assert history[1].supplier_signed_by_id == team.supplier_pm.id
        assert history[1].customer_signed_by_id == team.customer_pm.id

        v = db.session.get(Variation, variation.id)
        assert v.status == "applied"
        assert v.approved_at is not None
        assert v.applied_at is not None
        assert v.certificate_number == f"VC-{v.variation_ref}"
        assert v.total_cost_impact == Decimal("2000")
        vm = v.affected_milestones[0]
        assert (vm.baseline_version_before, vm.baseline_version_after) == (1, 2)

    def test_only_impacted_fields_move(self, team):
        m = _locked_milestone(team, billable="10000", start=date(2026, 1, 5), end=date(2026, 3, 27))
        variation = factories.make_variation(team.project, affects=[(m, None, None, 14)])
        _approve(team, variation)

        db.session.expire_all()
        milestone = db.session.get(Milestone, m.id)
        assert milestone.start_date == date(2026, 1, 5)
        assert milestone.forecast_end_date == date(2026, 4, 10)
        assert milestone.billable == Decimal("10000")
        assert milestone.baseline_end_date == date(2026, 4, 10)
        assert db.session.get(Variation, variation.id).total_days_impact == 14

    def test_multiple_milestones(self, team):
        m1 = _locked_milestone(team, billable="1000")
        m2 = _locked_milestone(team, billable="3000")
        variation = factories.make_variation(team.project, affects=[(m1, 100, None, None), (m2, -500, 0, 0)])
        _approve(team, variation)
        db.session.expire_all()
        assert baseline_service.current_baseline(m1.id).baseline_billable == Decimal("1100")
        assert baseline_service.current_baseline(m2.id).baseline_billable == Decimal("2500")

    def test_successive_variations_append(self, team):
        m = _locked_milestone(team, billable="10000")
        _approve(team, factories.make_variation(team.project, affects=[(m, 2000, None, None)]))
        _approve(team, factories.make_variation(team.project, affects=[(m, -1000, None, 3)]))
        assert [v.version for v in baseline_service.baseline_history(m.id)] == [1, 2, 3]
        assert baseline_service.current_baseline(m.id).baseline_billable == Decimal("11000")

    def test_reapplication_is_noop(self, team):
        m = _locked_milestone(team, billable="10000")
        variation = factories.make_variation(team.project, affects=[(m, 2000, None, None)])
        _approve(team, variation)

        v = db.session.get(Variation, variation.id)
        again = variation_service.apply_variation(v)
        db.session.commit()
        assert [bv.version for bv in again] == [2]
        count = db.session.execute(
            select(func.count(BaselineVersion.id)).where(BaselineVersion.milestone_id == m.id)
        ).scalar()
        assert count == 2
        assert db.session.get(Milestone, m.id).billable == Decimal("12000")

    def test_signing_applied_variation_is_benign(self, team):
        m = _locked_milestone(team)
        variation = factories.make_variation(team.project, affects=[(m, 1, None, None)])
        _approve(team, variation)
        with pytest.raises(AlreadyInTerminalState):
            attempt_transition("variations", variation.id, "sign", team.id_for("customer_pm"))


class TestSubmitAndReject:
    def test_submit_without_milestones(self, team):
        variation = factories.make_variation(team.project)
        with pytest.raises(MissingPrerequisite) as exc_info:
            attempt_transition("variations", variation.id, "submit", team.id_for("supplier_pm"))
        assert exc_info.value.rule == "NoAffectedMilestones"

    def test_submit_against_unlocked_baseline(self, team):
        m = factories.make_milestone(team.project)
        variation = factories.make_variation(team.project, affects=[(m, 500, None, None)])
        with pytest.raises(MissingPrerequisite) as exc_info:
            attempt_transition("variations", variation.id, "submit", team.id_for("supplier_pm"))
        assert exc_info.value.rule == "MilestoneBaselineNotLocked"
        assert exc_info.value.unmet[0]["milestone_id"] == m.id
        assert db.session.get(Variation, variation.id).status == "draft"

    def test_reject_records_reason(self, team):
        m = _locked_milestone(team)
        variation = factories.make_variation(team.project, affects=[(m, 500, None, None)])
        attempt_transition("variations", variation.id, "submit", team.id_for("supplier_pm"))
        result = attempt_transition("variations", variation.id, "reject", team.id_for("customer_pm"),
                                    reason="Out of scope")
        assert result.new_state == "rejected"
        v = db.session.get(Variation, variation.id)
        assert v.rejected_by_id == team.customer_pm.id
        assert v.rejection_reason == "Out of scope"
        assert [bv.version for bv in baseline_service.baseline_history(m.id)] == [1]

    def test_reject_needs_reason(self, team):
        m = _locked_milestone(team)
        variation = factories.make_variation(team.project, affects=[(m, 500, None, None)])
        attempt_transition("variations", variation.id, "submit", team.id_for("supplier_pm"))
        with pytest.raises(ValidationError):
            attempt_transition("variations", variation.id, "reject", team.id_for("customer_pm"))

    def test_customer_cannot_submit(self, team):
        m = _locked_milestone(team)
        variation = factories.make_variation(team.project, affects=[(m, 500, None, None)])
        with pytest.raises(PermissionDenied):
            attempt_transition("variations", variation.id, "submit", team.id_for("customer_pm"))


class TestDrafting:
    def test_create_and_add_milestone(self, team):
        m = _locked_milestone(team)
        ident = team.id_for("supplier_pm")
        v1 = variation_service.create_variation(team.project.id, ident, title="Extra UAT cycle")
        v2 = variation_service.create_variation(team.project.id, ident, title="Data migration rehearsal")
        assert (v1.variation_ref, v2.variation_ref) == ("VAR-001", "VAR-002")

        vm = variation_service.add_affected_milestone(v1.id, m.id, ident, cost_delta="750.25", end_delta_days=5)
        assert vm.cost_delta == Decimal("750.25")
        assert vm.start_delta_days is None
        # Re-declaring replaces the row
        variation_service.add_affected_milestone(v1.id, m.id, ident, cost_delta=100)
        assert len(db.session.get(Variation, v1.id).affected_milestones) == 1

    def test_title_required(self, team):
        with pytest.raises(ValidationError):
            variation_service.create_variation(team.project.id, team.id_for("supplier_pm"), title="  ")

    def test_invalid_type(self, team):
        with pytest.raises(ValidationError):
            variation_service.create_variation(
                team.project.id, team.id_for("supplier_pm"), title="X", variation_type="bribe",
            )

    def test_viewer_cannot_create(self, team):
        with pytest.raises(PermissionDenied):
            variation_service.create_variation(team.project.id, team.id_for("viewer"), title="X")

    def test_only_draft_can_change(self, team):
        m = _locked_milestone(team)
        variation = factories.make_variation(team.project, affects=[(m, 500, None, None)])
        attempt_transition("variations", variation.id, "submit", team.id_for("supplier_pm"))
        with pytest.raises(IllegalTransition) as exc_info:
            variation_service.add_affected_milestone(variation.id, m.id, team.id_for("supplier_pm"), cost_delta=1)
        assert exc_info.value.rule == "VariationNotDraft"

    def test_invalid_days(self, team):
        m = _locked_milestone(team)
        variation = factories.make_variation(team.project)
        with pytest.raises(ValidationError):
            variation_service.add_affected_milestone(
                variation.id, m.id, team.id_for("supplier_pm"), end_delta_days="soon",
            )
