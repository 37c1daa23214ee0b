"""
Variation Service — building and applying change requests.

A variation is drafted with one VariationMilestone row per affected
milestone, submitted, dual-signed, and then applied.  Application is the
side effect of the dual signature and runs inside the same transaction
as the signature write (see ``workflow_engine``); it:

  - appends BaselineVersion N+1 for every affected milestone
  - moves each milestone's impacted working fields by the declared deltas
    (a delta of None leaves the field alone)
  - stamps ``applied_at`` and the certificate number on the variation

``apply_variation`` is idempotent: an already-applied variation returns
the versions it produced earlier and writes nothing.

Usage:
    from tracker.services import variation_service

    v = variation_service.create_variation(project_id, identity, title="Extra UAT cycle")
    variation_service.add_affected_milestone(v.id, m.id, identity, cost_delta=2000)
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select

from tracker.core.exceptions import (
    IllegalTransition,
    MissingPrerequisite,
    NotFoundError,
    ValidationError,
)
from tracker.models import db
from tracker.models.audit import write_audit
from tracker.models.baseline import BaselineVersion
from tracker.models.workflow import VARIATION_TYPES, Milestone, Variation, VariationMilestone
from tracker.services import baseline_service
from tracker.services.permission_service import check_permission

logger = logging.getLogger(__name__)


def _to_decimal(value):
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except ArithmeticError as exc:
        raise ValidationError(f"Invalid amount {value!r}", details={"cost_delta": str(value)}) from exc


def _to_days(value, field):
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be an integer", details={field: value}) from exc


def _next_variation_ref(project_id):
    refs = db.session.execute(
        select(Variation.variation_ref).where(Variation.project_id == project_id)
    ).scalars().all()
    highest = 0
    for ref in refs:
        try:
            highest = max(highest, int(ref.split("-")[-1]))
        except ValueError:
            continue
    return f"VAR-{highest + 1:03d}"


# ═════════════════════════════════════════════════════════════════════════════
# Drafting
# ═════════════════════════════════════════════════════════════════════════════


def create_variation(project_id, identity, *, title, description="", variation_type="combined"):
    """Create a draft variation with the next ``VAR-NNN`` reference."""
    check_permission(identity, "create", "variations", project_id=project_id)
    title = (title or "").strip()
    if not title:
        raise ValidationError("title is required", details={"title": "required"})
    if variation_type not in VARIATION_TYPES:
        raise ValidationError(
            f"Invalid variation_type '{variation_type}'",
            details={"valid_types": sorted(VARIATION_TYPES)},
        )

    variation = Variation(
        project_id=project_id,
        variation_ref=_next_variation_ref(project_id),
        title=title,
        description=description or "",
        variation_type=variation_type,
        status="draft",
        created_by_id=identity.user_id,
    )
    db.session.add(variation)
    db.session.flush()
    write_audit(
        entity_type="variations",
        entity_id=variation.id,
        action="create",
        actor_user_id=identity.user_id,
        project_id=project_id,
        diff={"variation_ref": variation.variation_ref},
    )
    db.session.commit()
    logger.info(
        "Variation created",
        extra={"project_id": project_id, "entity_type": "variations", "user_id": identity.user_id},
    )
    return variation


def add_affected_milestone(
    variation_id,
    milestone_id,
    identity,
    *,
    cost_delta=None,
    start_delta_days=None,
    end_delta_days=None,
    rationale="",
):
    """Declare (or replace) a draft variation's impact on one milestone."""
    variation = db.session.get(Variation, variation_id)
    if variation is None or variation.is_deleted:
        raise NotFoundError(resource="Variation", resource_id=variation_id)
    check_permission(identity, "edit", "variations", variation)
    if variation.status != "draft":
        raise IllegalTransition(
            "variations", "edit", variation.status, rule="VariationNotDraft",
            message=f"{variation.variation_ref} is '{variation.status}'; only draft variations can change",
        )

    milestone = db.session.get(Milestone, milestone_id)
    if milestone is None or milestone.is_deleted or milestone.project_id != variation.project_id:
        raise NotFoundError(resource="Milestone", resource_id=milestone_id)

    cost_delta = _to_decimal(cost_delta)
    start_delta_days = _to_days(start_delta_days, "start_delta_days")
    end_delta_days = _to_days(end_delta_days, "end_delta_days")

    vm = db.session.execute(
        select(VariationMilestone).where(
            VariationMilestone.variation_id == variation.id,
            VariationMilestone.milestone_id == milestone.id,
        )
    ).scalar_one_or_none()
    if vm is None:
        vm = VariationMilestone(variation=variation, milestone_id=milestone.id)
        db.session.add(vm)
    vm.cost_delta = cost_delta
    vm.start_delta_days = start_delta_days
    vm.end_delta_days = end_delta_days
    vm.rationale = rationale or ""
    db.session.commit()
    return vm


def compute_impact_totals(variation):
    """Sum of cost deltas and of end-date shifts across affected milestones."""
    cost = Decimal("0")
    days = 0
    for vm in variation.affected_milestones:
        if vm.cost_delta is not None:
            cost += vm.cost_delta
        if vm.end_delta_days is not None:
            days += vm.end_delta_days
    return {"total_cost_impact": cost, "total_days_impact": days}


# ═════════════════════════════════════════════════════════════════════════════
# Workflow hooks (called by workflow_engine inside its transaction)
# ═════════════════════════════════════════════════════════════════════════════


def require_locked_milestones(variation, ctx):
    """Submit guard: at least one affected milestone, each live and locked."""
    if not variation.affected_milestones:
        raise MissingPrerequisite(
            f"{variation.variation_ref} has no affected milestones",
            rule="NoAffectedMilestones",
            unmet=[{"variation_id": variation.id}],
        )
    unmet = []
    for vm in variation.affected_milestones:
        m = vm.milestone
        if m.is_deleted or not m.is_baseline_locked:
            unmet.append({
                "milestone_id": m.id,
                "milestone_ref": m.milestone_ref,
                "baseline_status": m.baseline_status,
                "is_deleted": m.is_deleted,
            })
    if unmet:
        raise MissingPrerequisite(
            "Every affected milestone needs a locked baseline",
            rule="MilestoneBaselineNotLocked",
            unmet=unmet,
        )


def on_submit(variation, ctx):
    totals = compute_impact_totals(variation)
    variation.total_cost_impact = totals["total_cost_impact"]
    variation.total_days_impact = totals["total_days_impact"]
    variation.submitted_at = datetime.now(timezone.utc)
    return ["impact_totals_computed"]


def on_reject(variation, ctx):
    variation.rejected_by_id = ctx.user.id
    variation.rejected_at = datetime.now(timezone.utc)
    variation.rejection_reason = ctx.reason
    return []


def on_approved(variation, ctx):
    variation.approved_at = datetime.now(timezone.utc)
    return ["variation_approved"]


def on_apply(variation, ctx):
    versions = apply_variation(variation, actor_user_id=ctx.user.id)
    return [f"baseline_version:{v.milestone_id}:v{v.version}" for v in versions]


# ═════════════════════════════════════════════════════════════════════════════
# Application
# ═════════════════════════════════════════════════════════════════════════════


def _existing_versions(variation):
    return db.session.execute(
        select(BaselineVersion)
        .where(BaselineVersion.variation_id == variation.id)
        .order_by(BaselineVersion.milestone_id)
    ).scalars().all()


def apply_variation(variation, actor_user_id=None):
    """Apply *variation* to every affected milestone; returns the new versions.

    Does not commit.  Re-invocation for an applied variation is a no-op
    returning the versions written the first time.
    """
    if variation.applied_at is not None or variation.status == "applied":
        logger.info(
            "Variation already applied; skipping",
            extra={"project_id": variation.project_id, "entity_type": "variations"},
        )
        return list(_existing_versions(variation))

    versions = []
    for vm in variation.affected_milestones:
        milestone = db.session.execute(
            select(Milestone).where(Milestone.id == vm.milestone_id).with_for_update()
        ).scalar_one()
        if milestone.is_deleted:
            raise MissingPrerequisite(
                f"Milestone {milestone.milestone_ref} was deleted",
                rule="MilestoneDeleted",
                unmet=[{"milestone_id": milestone.id}],
            )

        before = baseline_service.current_baseline(milestone.id)
        vm.baseline_version_before = before.version if before else None
        version = baseline_service.append_version(
            milestone,
            variation,
            start_delta_days=vm.start_delta_days,
            end_delta_days=vm.end_delta_days,
            cost_delta=vm.cost_delta,
        )
        vm.baseline_version_after = version.version

        # Working copy: only the impacted fields move
        if vm.start_delta_days is not None and milestone.start_date is not None:
            milestone.start_date = milestone.start_date + timedelta(days=vm.start_delta_days)
        if vm.end_delta_days is not None and milestone.forecast_end_date is not None:
            milestone.forecast_end_date = milestone.forecast_end_date + timedelta(days=vm.end_delta_days)
        if vm.cost_delta is not None:
            milestone.billable = (milestone.billable or Decimal("0")) + vm.cost_delta

        write_audit(
            entity_type="milestones",
            entity_id=milestone.id,
            action="baseline.version",
            actor_user_id=actor_user_id,
            project_id=milestone.project_id,
            diff={
                "version": version.version,
                "variation_ref": variation.variation_ref,
                "cost_delta": vm.cost_delta,
                "start_delta_days": vm.start_delta_days,
                "end_delta_days": vm.end_delta_days,
            },
        )
        versions.append(version)

    variation.applied_at = datetime.now(timezone.utc)
    variation.certificate_number = f"VC-{variation.variation_ref}"
    db.session.flush()
    logger.info(
        "Variation applied",
        extra={"project_id": variation.project_id, "entity_type": "variations", "user_id": actor_user_id},
    )
    return versions
