"""
Soft Delete Service — tombstone, restore and purge workflow records.

    soft_delete  needs ``delete``; sets the tombstone triple, leaves
                 children alone and reports how many live dependents
                 the record still has
    restore      needs ``delete`` (same tier); NotDeleted if live
    purge        needs ``purge`` (admin only); the record must already be
                 tombstoned, so a hard delete is always two steps

Default listings go through ``Model.query_active()``; tombstoned rows are
only reachable by id (restore / purge) and through ``list_deleted``.
"""

import logging

from sqlalchemy import func, select

from tracker.core.exceptions import IllegalTransition, NotDeleted, NotFoundError
from tracker.models import db
from tracker.models.audit import write_audit
from tracker.models.baseline import BaselineVersion
from tracker.models.workflow import (
    Deliverable,
    MilestoneCertificate,
    Timesheet,
    VariationMilestone,
)
from tracker.services.notification import NotificationService
from tracker.services.permission_service import check_permission
from tracker.services.workflow_engine import get_model

logger = logging.getLogger(__name__)

# Variations past these states carry approvals and cannot be tombstoned
_DELETABLE_VARIATION_STATES = {"draft", "rejected"}


def _load(entity_type, record_id):
    model = get_model(entity_type)
    record = db.session.get(model, record_id)
    if record is None:
        raise NotFoundError(resource=entity_type, resource_id=record_id)
    return record


def _count(stmt):
    return db.session.execute(stmt).scalar() or 0


def dependents_of(entity_type, record):
    """Live records that still point at *record*, by kind."""
    if entity_type == "milestones":
        return {
            "deliverables": _count(
                select(func.count(Deliverable.id)).where(
                    Deliverable.milestone_id == record.id, Deliverable.is_deleted.is_(False),
                )
            ),
            "certificates": _count(
                select(func.count(MilestoneCertificate.id)).where(
                    MilestoneCertificate.milestone_id == record.id,
                    MilestoneCertificate.is_deleted.is_(False),
                )
            ),
            "timesheets": _count(
                select(func.count(Timesheet.id)).where(
                    Timesheet.milestone_id == record.id, Timesheet.is_deleted.is_(False),
                )
            ),
            "variations": _count(
                select(func.count(VariationMilestone.id)).where(VariationMilestone.milestone_id == record.id)
            ),
        }
    if entity_type == "variations":
        return {"affected_milestones": len(record.affected_milestones)}
    return {}


def _guard_deletable(entity_type, record):
    if entity_type == "milestones" and (record.is_baseline_locked or record.has_baseline_signature):
        raise IllegalTransition(
            entity_type, "delete", record.baseline_status, rule="BaselineLocked",
            message="baseline is locked; raise a variation instead",
        )
    if entity_type == "variations" and record.status not in _DELETABLE_VARIATION_STATES:
        raise IllegalTransition(
            entity_type, "delete", record.status, rule="VariationInProgress",
            message=f"{record.variation_ref} is '{record.status}'; only draft or rejected variations can be deleted",
        )


def soft_delete(entity_type, record_id, identity):
    """Tombstone a record.  Deleting an already deleted record is a no-op.

    Returns:
        {"entity_type", "record_id", "deleted", "already_deleted", "dependents"}
    """
    record = _load(entity_type, record_id)
    check_permission(identity, "delete", entity_type, record)

    result = {
        "entity_type": entity_type,
        "record_id": record.id,
        "deleted": True,
        "already_deleted": record.is_deleted,
        "dependents": dependents_of(entity_type, record),
    }
    if record.is_deleted:
        return result

    _guard_deletable(entity_type, record)
    try:
        record.soft_delete(identity.user_id)
        write_audit(
            entity_type=entity_type,
            entity_id=record.id,
            action="lifecycle.soft_delete",
            actor_user_id=identity.user_id,
            project_id=record.project_id,
            diff={"dependents": result["dependents"]},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Record soft-deleted",
        extra={"entity_type": entity_type, "project_id": record.project_id, "user_id": identity.user_id},
    )
    NotificationService.notify_lifecycle(
        "soft_delete", entity_type=entity_type, record_id=record.id,
        project_id=record.project_id, actor_user_id=identity.user_id,
    )
    return result


def restore(entity_type, record_id, identity):
    """Clear the tombstone.  Returns the restored record."""
    record = _load(entity_type, record_id)
    check_permission(identity, "delete", entity_type, record)
    if not record.is_deleted:
        raise NotDeleted(entity_type, record.id)

    try:
        record.restore()
        write_audit(
            entity_type=entity_type,
            entity_id=record.id,
            action="lifecycle.restore",
            actor_user_id=identity.user_id,
            project_id=record.project_id,
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Record restored",
        extra={"entity_type": entity_type, "project_id": record.project_id, "user_id": identity.user_id},
    )
    NotificationService.notify_lifecycle(
        "restore", entity_type=entity_type, record_id=record.id,
        project_id=record.project_id, actor_user_id=identity.user_id,
    )
    return record


def purge(entity_type, record_id, identity):
    """Irreversibly remove a tombstoned record."""
    record = _load(entity_type, record_id)
    check_permission(identity, "delete", entity_type, record)
    check_permission(identity, "purge", entity_type, record)
    if not record.is_deleted:
        raise NotDeleted(entity_type, record.id)

    if entity_type == "variations":
        referenced = _count(
            select(func.count(BaselineVersion.id)).where(BaselineVersion.variation_id == record.id)
        )
        if referenced:
            raise IllegalTransition(
                entity_type, "purge", record.status, rule="ReferencedByBaselineHistory",
                message=f"{record.variation_ref} produced baseline versions and cannot be purged",
            )

    project_id = record.project_id
    try:
        write_audit(
            entity_type=entity_type,
            entity_id=record.id,
            action="lifecycle.purge",
            actor_user_id=identity.user_id,
            project_id=project_id,
        )
        db.session.delete(record)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Record purged",
        extra={"entity_type": entity_type, "project_id": project_id, "user_id": identity.user_id},
    )
    NotificationService.notify_lifecycle(
        "purge", entity_type=entity_type, record_id=record_id,
        project_id=project_id, actor_user_id=identity.user_id,
    )
    return {"entity_type": entity_type, "record_id": record_id, "purged": True}


def deleted_query(entity_type, project_id, identity):
    """Query for the "deleted items" view of one project, newest first."""
    model = get_model(entity_type)
    check_permission(identity, "delete", entity_type, project_id=project_id)
    return (
        model.query_deleted()
        .filter(model.project_id == project_id)
        .order_by(model.deleted_at.desc(), model.id.desc())
    )


def list_deleted(entity_type, project_id, identity):
    return deleted_query(entity_type, project_id, identity).all()


def active_query(entity_type, project_id, identity):
    """Default listing: live records only."""
    model = get_model(entity_type)
    check_permission(identity, "view", entity_type, project_id=project_id)
    return (
        model.query_active()
        .filter(model.project_id == project_id)
        .order_by(model.id)
    )
