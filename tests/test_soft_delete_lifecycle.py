"""
Soft-delete lifecycle tests.

Tests cover:
  - soft delete → restore round trip (tombstone triple set and cleared)
  - deleted records drop out of default queries and into list_deleted
  - delete of a deleted record is a no-op; restore of a live one is NotDeleted
  - purge: admin-only, tombstoned records only, blocked for variations
    referenced by baseline history
  - milestones with a baseline signature cannot be deleted
"""

import pytest
from sqlalchemy import select

from tests import factories
from tracker.core.exceptions import IllegalTransition, NotDeleted, PermissionDenied
from tracker.models import db
from tracker.models.audit import AuditLog
from tracker.models.workflow import Deliverable, Milestone, Variation
from tracker.services import soft_delete_service
from tracker.services.workflow_engine import attempt_transition


@pytest.fixture()
def milestone(team):
    return factories.make_milestone(team.project)


@pytest.fixture()
def deliverable(milestone):
    return factories.make_deliverable(milestone)


class TestRoundTrip:
    def test_soft_delete_then_restore(self, team, deliverable, events):
        ident = team.id_for("supplier_pm")
        result = soft_delete_service.soft_delete("deliverables", deliverable.id, ident)
        assert result["deleted"] is True
        assert result["already_deleted"] is False

        d = db.session.get(Deliverable, deliverable.id)
        assert d.is_deleted is True
        assert d.deleted_at is not None
        assert d.deleted_by_id == team.supplier_pm.id
        assert Deliverable.query_active().filter_by(id=d.id).first() is None
        assert [r.id for r in soft_delete_service.list_deleted("deliverables", team.project.id, ident)] == [d.id]

        restored = soft_delete_service.restore("deliverables", deliverable.id, ident)
        assert restored.tombstone_dict() == {"is_deleted": False, "deleted_at": None, "deleted_by_id": None}
        assert Deliverable.query_active().filter_by(id=d.id).first() is not None
        assert [e[0] for e in events] == ["lifecycle.soft_delete", "lifecycle.restore"]

    def test_delete_twice_is_noop(self, team, deliverable):
        ident = team.id_for("supplier_pm")
        soft_delete_service.soft_delete("deliverables", deliverable.id, ident)
        deleted_at = db.session.get(Deliverable, deliverable.id).deleted_at
        again = soft_delete_service.soft_delete("deliverables", deliverable.id, ident)
        assert again["already_deleted"] is True
        assert db.session.get(Deliverable, deliverable.id).deleted_at == deleted_at

    def test_restore_live_record(self, team, deliverable):
        with pytest.raises(NotDeleted) as exc_info:
            soft_delete_service.restore("deliverables", deliverable.id, team.id_for("supplier_pm"))
        assert exc_info.value.http_status == 409

    def test_children_are_not_cascaded(self, team, milestone, deliverable):
        result = soft_delete_service.soft_delete("milestones", milestone.id, team.id_for("org_admin"))
        assert result["dependents"]["deliverables"] == 1
        assert db.session.get(Deliverable, deliverable.id).is_deleted is False

    def test_audit_rows(self, team, deliverable):
        soft_delete_service.soft_delete("deliverables", deliverable.id, team.id_for("supplier_pm"))
        actions = db.session.execute(
            select(AuditLog.action).where(AuditLog.entity_type == "deliverables")
        ).scalars().all()
        assert actions == ["lifecycle.soft_delete"]

    def test_active_listing_excludes_tombstones(self, team, milestone):
        keep = factories.make_deliverable(milestone)
        gone = factories.make_deliverable(milestone)
        soft_delete_service.soft_delete("deliverables", gone.id, team.id_for("supplier_pm"))
        ids = [d.id for d in soft_delete_service.active_query("deliverables", team.project.id,
                                                              team.id_for("viewer")).all()]
        assert ids == [keep.id]


class TestPermissions:
    def test_viewer_cannot_delete(self, team, deliverable):
        with pytest.raises(PermissionDenied):
            soft_delete_service.soft_delete("deliverables", deliverable.id, team.id_for("viewer"))

    def test_milestone_delete_is_admin_only(self, team, milestone):
        with pytest.raises(PermissionDenied):
            soft_delete_service.soft_delete("milestones", milestone.id, team.id_for("supplier_pm"))

    def test_owner_deletes_own_draft_timesheet(self, team):
        ts = factories.make_timesheet(team.project, team.contributor)
        soft_delete_service.soft_delete("timesheets", ts.id, team.id_for("contributor"))
        assert ts.is_deleted is True


class TestGuards:
    def test_signed_milestone_cannot_be_deleted(self, team, milestone):
        attempt_transition("milestones", milestone.id, "sign", team.id_for("supplier_pm"))
        with pytest.raises(IllegalTransition) as exc_info:
            soft_delete_service.soft_delete("milestones", milestone.id, team.id_for("org_admin"))
        assert exc_info.value.rule == "BaselineLocked"
        assert str(exc_info.value) == "baseline is locked; raise a variation instead"
        assert db.session.get(Milestone, milestone.id).is_deleted is False

    def test_submitted_variation_cannot_be_deleted(self, team):
        variation = factories.make_variation(team.project, status="submitted")
        with pytest.raises(IllegalTransition) as exc_info:
            soft_delete_service.soft_delete("variations", variation.id, team.id_for("supplier_pm"))
        assert exc_info.value.rule == "VariationInProgress"


class TestPurge:
    def test_purge_requires_tombstone(self, team, deliverable):
        with pytest.raises(NotDeleted):
            soft_delete_service.purge("deliverables", deliverable.id, team.id_for("org_admin"))

    def test_purge_is_admin_only(self, team, deliverable):
        ident = team.id_for("supplier_pm")
        soft_delete_service.soft_delete("deliverables", deliverable.id, ident)
        with pytest.raises(PermissionDenied):
            soft_delete_service.purge("deliverables", deliverable.id, ident)

    def test_purge_removes_row(self, team, deliverable, events):
        soft_delete_service.soft_delete("deliverables", deliverable.id, team.id_for("supplier_pm"))
        result = soft_delete_service.purge("deliverables", deliverable.id, team.id_for("org_admin"))
        assert result["purged"] is True
        assert db.session.get(Deliverable, deliverable.id) is None
        assert events[-1][0] == "lifecycle.purge"

    def test_purge_draft_variation_drops_affected_rows(self, team, milestone):
        variation = factories.make_variation(team.project, affects=[(milestone, 100, None, None)])
        soft_delete_service.soft_delete("variations", variation.id, team.id_for("supplier_pm"))
        soft_delete_service.purge("variations", variation.id, team.id_for("system_admin"))
        assert db.session.get(Variation, variation.id) is None

    def test_variation_in_baseline_history_cannot_be_purged(self, team):
        m = factories.make_milestone(team.project)
        attempt_transition("milestones", m.id, "sign", team.id_for("supplier_pm"))
        attempt_transition("milestones", m.id, "sign", team.id_for("customer_pm"))
        variation = factories.make_variation(team.project, affects=[(m, 100, None, None)])
        attempt_transition("variations", variation.id, "submit", team.id_for("supplier_pm"))
        attempt_transition("variations", variation.id, "sign", team.id_for("supplier_pm"))
        attempt_transition("variations", variation.id, "sign", team.id_for("customer_pm"))

        applied = db.session.get(Variation, variation.id)
        with pytest.raises(IllegalTransition):
            soft_delete_service.soft_delete("variations", applied.id, team.id_for("org_admin"))

        applied.soft_delete(team.org_admin.id)
        db.session.commit()
        with pytest.raises(IllegalTransition) as exc_info:
            soft_delete_service.purge("variations", applied.id, team.id_for("org_admin"))
        assert exc_info.value.rule == "ReferencedByBaselineHistory"
        assert db.session.get(Variation, applied.id) is not None
