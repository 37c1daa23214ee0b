"""
Workflow state machine tests.

Tests cover:
  - baseline lock scenario: both parties sign → locked, v1 written
  - either party may sign first; same-party re-sign overwrites
  - UnauthorizedSigner, PermissionDenied, IllegalTransition,
    AlreadyInTerminalState (benign)
  - deliverable, timesheet and expense flows
  - atomic rollback when a side effect fails
  - store timeouts surface as TransientFailure
  - notifications after commit, never raising into the caller
"""

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from tests import factories
from tracker.core.exceptions import (
    AlreadyInTerminalState,
    IllegalTransition,
    NotFoundError,
    PermissionDenied,
    TransientFailure,
    UnauthorizedSigner,
    ValidationError,
)
from tracker.models import db
from tracker.models.audit import AuditLog
from tracker.models.baseline import BaselineVersion
from tracker.models.workflow import Milestone
from tracker.services import baseline_service, workflow_engine
from tracker.services.notification import NotificationService
from tracker.services.workflow_engine import attempt_transition, available_actions


@pytest.fixture()
def milestone(team):
    return factories.make_milestone(team.project, ref="M01", billable="10000")


def _reload(model, pk):
    db.session.expire_all()
    return db.session.get(model, pk)


# ═════════════════════════════════════════════════════════════════════════
# BASELINE DUAL SIGNATURE
# ═════════════════════════════════════════════════════════════════════════


class TestBaselineLock:
    def test_both_signatures_lock_baseline(self, team, milestone, events):
        first = attempt_transition("milestones", milestone.id, "sign", team.id_for("supplier_pm"))
        assert first.previous_state == "draft"
        assert first.new_state == "awaiting_customer_sign"
        assert first.signature_recorded == "supplier"
        assert first.applied_side_effects == []

        second = attempt_transition("milestones", milestone.id, "sign", team.id_for("customer_pm"))
        assert second.new_state == "locked"
        assert second.signature_recorded == "customer"
        assert second.applied_side_effects == [f"baseline_version:{milestone.id}:v1"]

        m = _reload(Milestone, milestone.id)
        assert m.baseline_status == "locked"
        assert m.baseline_supplier_signer_name == "Supplier Pm"
        assert m.baseline_customer_signed_by_id == team.customer_pm.id
        assert float(m.baseline_billable) == 10000.0

        history = baseline_service.baseline_history(milestone.id)
        assert [v.version for v in history] == [1]
        assert history[0].variation_id is None
        assert history[0].supplier_signed_by_id == team.supplier_pm.id

        assert [e[0] for e in events] == ["workflow.transition", "workflow.transition"]
        assert events[-1][1]["new_state"] == "locked"

    def test_customer_may_sign_first(self, team, milestone):
        result = attempt_transition("milestones", milestone.id, "sign_as_customer", team.id_for("customer_pm"))
        assert result.new_state == "awaiting_supplier_sign"

    def test_same_party_resign_overwrites(self, team, milestone):
        attempt_transition("milestones", milestone.id, "sign", team.id_for("supplier_pm"))
        first_at = _reload(Milestone, milestone.id).baseline_supplier_signed_at

        again = attempt_transition("milestones", milestone.id, "sign", team.id_for("supplier_pm"))
        assert again.previous_state == "awaiting_customer_sign"
        assert again.new_state == "awaiting_customer_sign"

        m = _reload(Milestone, milestone.id)
        assert m.baseline_supplier_signed_by_id == team.supplier_pm.id
        assert m.baseline_supplier_signed_at >= first_at
        assert m.baseline_customer_signed_by_id is None
        assert baseline_service.baseline_history(milestone.id) == []

    def test_wrong_slot_is_unauthorized_signer(self, team, milestone):
        with pytest.raises(UnauthorizedSigner) as exc_info:
            attempt_transition("milestones", milestone.id, "sign_as_customer", team.id_for("supplier_pm"))
        assert exc_info.value.details["allowed_slots"] == ["supplier"]
        assert _reload(Milestone, milestone.id).baseline_customer_signed_by_id is None

    def test_explicit_slot_checked(self, team, milestone):
        with pytest.raises(UnauthorizedSigner):
            attempt_transition("milestones", milestone.id, "sign", team.id_for("customer_pm"), slot="supplier")

    def test_viewer_cannot_sign(self, team, milestone):
        with pytest.raises(PermissionDenied) as exc_info:
            attempt_transition("milestones", milestone.id, "sign", team.id_for("viewer"))
        assert exc_info.value.rule == "deny_by_default"

    def test_org_admin_must_name_slot(self, team, milestone):
        with pytest.raises(ValidationError) as exc_info:
            attempt_transition("milestones", milestone.id, "sign", team.id_for("org_admin"))
        assert exc_info.value.rule == "SlotAmbiguous"

        result = attempt_transition("milestones", milestone.id, "sign", team.id_for("org_admin"), slot="customer")
        assert result.new_state == "awaiting_supplier_sign"

    def test_signing_locked_baseline_is_benign(self, team, milestone):
        attempt_transition("milestones", milestone.id, "sign", team.id_for("supplier_pm"))
        attempt_transition("milestones", milestone.id, "sign", team.id_for("customer_pm"))
        with pytest.raises(AlreadyInTerminalState) as exc_info:
            attempt_transition("milestones", milestone.id, "sign", team.id_for("customer_pm"))
        assert exc_info.value.benign is True
        assert isinstance(exc_info.value, IllegalTransition)
        assert len(baseline_service.baseline_history(milestone.id)) == 1

    def test_audit_row_per_transition(self, team, milestone):
        attempt_transition("milestones", milestone.id, "sign", team.id_for("supplier_pm"))
        rows = db.session.execute(
            select(AuditLog).where(AuditLog.entity_type == "milestones", AuditLog.action == "workflow.sign")
        ).scalars().all()
        assert len(rows) == 1
        assert rows[0].diff["slot"] == "supplier"
        assert rows[0].diff["status"] == {"old": "draft", "new": "awaiting_customer_sign"}


# ═════════════════════════════════════════════════════════════════════════
# INPUT & STATE ERRORS
# ═════════════════════════════════════════════════════════════════════════


class TestErrors:
    def test_unknown_action(self, team, milestone):
        with pytest.raises(ValidationError) as exc_info:
            attempt_transition("milestones", milestone.id, "approve", team.id_for("supplier_pm"))
        assert exc_info.value.rule == "UnknownAction"

    def test_unknown_entity_type(self, team):
        with pytest.raises(ValidationError) as exc_info:
            attempt_transition("invoices", 1, "sign", team.id_for("supplier_pm"))
        assert exc_info.value.rule == "UnknownEntityType"

    def test_missing_record(self, team):
        with pytest.raises(NotFoundError):
            attempt_transition("milestones", 999, "sign", team.id_for("supplier_pm"))

    def test_tombstoned_record_is_not_found(self, team, milestone):
        milestone.soft_delete(team.org_admin.id)
        db.session.commit()
        with pytest.raises(NotFoundError):
            attempt_transition("milestones", milestone.id, "sign", team.id_for("supplier_pm"))

    def test_slot_mismatch(self, team, milestone):
        with pytest.raises(ValidationError) as exc_info:
            attempt_transition(
                "milestones", milestone.id, "sign_as_supplier", team.id_for("supplier_pm"), slot="customer",
            )
        assert exc_info.value.rule == "SlotMismatch"


# ═════════════════════════════════════════════════════════════════════════
# DELIVERABLES
# ═════════════════════════════════════════════════════════════════════════


class TestDeliverableFlow:
    def test_full_flow_to_delivered(self, team, milestone):
        d = factories.make_deliverable(milestone)
        steps = [
            ("start", "contributor", "in_progress"),
            ("submit_for_review", "contributor", "submitted_for_review"),
            ("complete_review", "customer_pm", "review_complete"),
            ("sign", "supplier_pm", "awaiting_customer_sign"),
            ("sign", "customer_pm", "delivered"),
        ]
        for action, who, expected in steps:
            assert attempt_transition("deliverables", d.id, action, team.id_for(who)).new_state == expected
        assert _reload(type(d), d.id).delivered_at is not None

    def test_return_for_work_then_restart(self, team, milestone):
        d = factories.make_deliverable(milestone, status="submitted_for_review")
        attempt_transition("deliverables", d.id, "return_for_work", team.id_for("customer_pm"))
        result = attempt_transition("deliverables", d.id, "start", team.id_for("contributor"))
        assert result.previous_state == "returned_for_work"
        assert result.new_state == "in_progress"

    def test_illegal_from_current_state(self, team, milestone):
        d = factories.make_deliverable(milestone, status="in_progress")
        with pytest.raises(IllegalTransition) as exc_info:
            attempt_transition("deliverables", d.id, "complete_review", team.id_for("customer_pm"))
        assert exc_info.value.current_state == "in_progress"

    def test_signing_before_review_is_illegal(self, team, milestone):
        d = factories.make_deliverable(milestone, status="in_progress")
        with pytest.raises(IllegalTransition):
            attempt_transition("deliverables", d.id, "sign", team.id_for("supplier_pm"))

    def test_available_actions_respect_role(self, team, milestone):
        d = factories.make_deliverable(milestone, status="submitted_for_review")
        assert available_actions("deliverables", d, team.id_for("customer_pm")) == [
            "complete_review", "return_for_work",
        ]
        assert available_actions("deliverables", d, team.id_for("viewer")) == []


# ═════════════════════════════════════════════════════════════════════════
# TIMESHEETS & EXPENSES
# ═════════════════════════════════════════════════════════════════════════


class TestTimesheetFlow:
    def test_owner_submits_customer_approves(self, team):
        ts = factories.make_timesheet(team.project, team.contributor)
        submitted = attempt_transition("timesheets", ts.id, "submit", team.id_for("contributor"))
        assert submitted.new_state == "submitted"

        approved = attempt_transition("timesheets", ts.id, "approve", team.id_for("customer_pm"))
        assert approved.new_state == "approved"
        assert approved.signature_recorded == "approver"
        reloaded = _reload(type(ts), ts.id)
        assert reloaded.approver_signed_by_id == team.customer_pm.id
        assert reloaded.submitted_at is not None

    def test_reject_and_resubmit(self, team):
        ts = factories.make_timesheet(team.project, team.contributor, status="submitted")
        attempt_transition("timesheets", ts.id, "reject", team.id_for("customer_finance"), reason="Wrong week")
        assert _reload(type(ts), ts.id).rejection_reason == "Wrong week"
        result = attempt_transition("timesheets", ts.id, "submit", team.id_for("contributor"))
        assert result.previous_state == "rejected"
        assert _reload(type(ts), ts.id).rejection_reason is None

    def test_contributor_cannot_submit_someone_elses(self, team):
        ts = factories.make_timesheet(team.project, team.supplier_finance)
        with pytest.raises(PermissionDenied):
            attempt_transition("timesheets", ts.id, "submit", team.id_for("contributor"))

    def test_supplier_cannot_approve(self, team):
        ts = factories.make_timesheet(team.project, team.contributor, status="submitted")
        with pytest.raises(PermissionDenied):
            attempt_transition("timesheets", ts.id, "approve", team.id_for("supplier_pm"))


class TestExpenseFlow:
    def test_reject_requires_reason(self, team):
        expense = factories.make_expense(team.project, team.contributor, status="submitted")
        with pytest.raises(ValidationError) as exc_info:
            attempt_transition("expenses", expense.id, "reject", team.id_for("customer_pm"))
        assert exc_info.value.rule == "ReasonRequired"
        assert _reload(type(expense), expense.id).status == "submitted"

    def test_non_chargeable_validated_by_supplier(self, team):
        expense = factories.make_expense(team.project, team.contributor, status="submitted", chargeable=False)
        with pytest.raises(PermissionDenied):
            attempt_transition("expenses", expense.id, "validate", team.id_for("customer_finance"))
        result = attempt_transition("expenses", expense.id, "validate", team.id_for("supplier_finance"))
        assert result.new_state == "validated"


# ═════════════════════════════════════════════════════════════════════════
# ATOMICITY & FAILURE MODES
# ═════════════════════════════════════════════════════════════════════════


class TestAtomicity:
    def test_failed_side_effect_rolls_back_signature(self, team, milestone, monkeypatch):
        attempt_transition("milestones", milestone.id, "sign", team.id_for("supplier_pm"))

        def _boom(*args, **kwargs):
            raise RuntimeError("versioning store unavailable")

        monkeypatch.setattr(baseline_service, "lock_original_baseline", _boom)
        with pytest.raises(RuntimeError):
            attempt_transition("milestones", milestone.id, "sign", team.id_for("customer_pm"))

        m = _reload(Milestone, milestone.id)
        assert m.baseline_status == "awaiting_customer_sign"
        assert m.baseline_customer_signed_by_id is None
        assert db.session.execute(select(BaselineVersion)).scalars().all() == []

    def test_store_timeout_is_transient(self, team, milestone, monkeypatch):
        def _timeout(*args, **kwargs):
            raise OperationalError("UPDATE milestones", {}, Exception("canceling statement due to statement timeout"))

        monkeypatch.setattr(workflow_engine, "_write_slot", _timeout)
        with pytest.raises(TransientFailure) as exc_info:
            attempt_transition("milestones", milestone.id, "sign", team.id_for("supplier_pm"))
        assert exc_info.value.retryable is True
        assert _reload(Milestone, milestone.id).baseline_status == "draft"

        monkeypatch.undo()
        result = attempt_transition("milestones", milestone.id, "sign", team.id_for("supplier_pm"))
        assert result.new_state == "awaiting_customer_sign"

    def test_failing_listener_does_not_break_transition(self, team, milestone):
        def _broken(event_type, payload):
            raise ConnectionError("mail relay down")

        NotificationService.subscribe(_broken)
        result = attempt_transition("milestones", milestone.id, "sign", team.id_for("supplier_pm"))
        assert result.new_state == "awaiting_customer_sign"

    def test_no_notification_on_failure(self, team, milestone, events):
        with pytest.raises(PermissionDenied):
            attempt_transition("milestones", milestone.id, "sign", team.id_for("viewer"))
        assert events == []
