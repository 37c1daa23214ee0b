"""
Baseline Versioning Service.

Owns the append-only ``milestone_baseline_versions`` history:

    v1      original baseline, written once when both parties have signed
    v2..vN  one per applied variation, carrying that variation's deltas

The current baseline is never read from a stored "current" field; it is
v1 plus the sum of every later delta, recomputed on each read.  The
denormalised ``Milestone.baseline_*`` columns are rewritten from that
reconciliation by whoever appends a version.

None of these functions commit; the caller owns the transaction.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import func, select

from tracker.core.exceptions import AlreadyLocked, MissingPrerequisite, NotFoundError
from tracker.models import db
from tracker.models.audit import write_audit
from tracker.models.baseline import BaselineVersion

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BaselineSnapshot:
    milestone_id: int
    version: int
    baseline_start_date: date | None
    baseline_end_date: date | None
    baseline_billable: Decimal

    def to_dict(self):
        return {
            "milestone_id": self.milestone_id,
            "version": self.version,
            "baseline_start_date": self.baseline_start_date.isoformat() if self.baseline_start_date else None,
            "baseline_end_date": self.baseline_end_date.isoformat() if self.baseline_end_date else None,
            "baseline_billable": str(self.baseline_billable),
        }


def _shift(value, days):
    if value is None or not days:
        return value
    return value + timedelta(days=days)


def _to_decimal(value):
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


# ── Reads ───────────────────────────────────────────────────────────────────


def baseline_history(milestone_id):
    """All versions of a milestone baseline, ascending."""
    return db.session.execute(
        select(BaselineVersion)
        .where(BaselineVersion.milestone_id == milestone_id)
        .order_by(BaselineVersion.version)
    ).scalars().all()


def next_version_number(milestone_id):
    current = db.session.execute(
        select(func.max(BaselineVersion.version)).where(BaselineVersion.milestone_id == milestone_id)
    ).scalar()
    return (current or 0) + 1


def reconcile(versions):
    """Fold a version list into a snapshot: v1 values plus Σ later deltas.

    Pure over its input; ``versions`` must start at version 1.
    """
    ordered = sorted(versions, key=lambda v: v.version)
    if not ordered or ordered[0].version != 1:
        return None
    original = ordered[0]
    start = original.baseline_start_date
    end = original.baseline_end_date
    billable = _to_decimal(original.baseline_billable)
    for v in ordered[1:]:
        start = _shift(start, v.start_delta_days)
        end = _shift(end, v.end_delta_days)
        billable += _to_decimal(v.cost_delta)
    return BaselineSnapshot(
        milestone_id=original.milestone_id,
        version=ordered[-1].version,
        baseline_start_date=start,
        baseline_end_date=end,
        baseline_billable=billable,
    )


def current_baseline(milestone_id):
    """Reconciled current baseline, or None while the baseline is unlocked."""
    return reconcile(baseline_history(milestone_id))


# ── Writes ──────────────────────────────────────────────────────────────────


def _copy_signatures(version, source, prefix=""):
    for party in ("supplier", "customer"):
        setattr(version, f"{party}_signed_by_id", getattr(source, f"{prefix}{party}_signed_by_id"))
        setattr(version, f"{party}_signer_name", getattr(source, f"{prefix}{party}_signer_name"))
        setattr(version, f"{party}_signed_at", getattr(source, f"{prefix}{party}_signed_at"))


def lock_original_baseline(milestone, actor_user_id=None):
    """Write version 1 from the milestone's working copy.

    Called once, as the side effect of the baseline dual signature.

    Raises:
        AlreadyLocked: a version 1 already exists (replayed side effect).
    """
    if milestone is None:
        raise NotFoundError(resource="Milestone")
    existing = db.session.execute(
        select(BaselineVersion.id).where(
            BaselineVersion.milestone_id == milestone.id,
            BaselineVersion.version == 1,
        )
    ).scalar()
    if existing is not None:
        raise AlreadyLocked(milestone.id)

    version = BaselineVersion(
        milestone_id=milestone.id,
        version=1,
        variation_id=None,
        baseline_start_date=milestone.start_date,
        baseline_end_date=milestone.forecast_end_date,
        baseline_billable=_to_decimal(milestone.billable),
        start_delta_days=0,
        end_delta_days=0,
        cost_delta=Decimal("0"),
    )
    _copy_signatures(version, milestone, prefix="baseline_")
    db.session.add(version)

    milestone.baseline_start_date = version.baseline_start_date
    milestone.baseline_end_date = version.baseline_end_date
    milestone.baseline_billable = version.baseline_billable
    db.session.flush()

    write_audit(
        entity_type="milestones",
        entity_id=milestone.id,
        action="baseline.lock",
        actor_user_id=actor_user_id,
        project_id=milestone.project_id,
        diff={"version": 1, "baseline_billable": version.baseline_billable},
    )
    logger.info(
        "Baseline v1 locked",
        extra={"project_id": milestone.project_id, "entity_type": "milestones", "milestone_id": milestone.id},
    )
    return version


def append_version(milestone, variation, *, start_delta_days, end_delta_days, cost_delta):
    """Append version N+1 for *variation* and rewrite the denormalised baseline.

    Deltas of None are stored as zero (field not impacted).
    """
    if milestone is None:
        raise NotFoundError(resource="Milestone")
    history = baseline_history(milestone.id)
    if not history:
        raise MissingPrerequisite(
            f"Milestone {milestone.milestone_ref} has no locked baseline",
            rule="BaselineNotLocked",
            unmet=[{"milestone_id": milestone.id, "baseline_status": milestone.baseline_status}],
        )
    previous = reconcile(history)

    version = BaselineVersion(
        milestone_id=milestone.id,
        version=next_version_number(milestone.id),
        variation_id=variation.id,
        start_delta_days=start_delta_days or 0,
        end_delta_days=end_delta_days or 0,
        cost_delta=_to_decimal(cost_delta),
    )
    version.baseline_start_date = _shift(previous.baseline_start_date, version.start_delta_days)
    version.baseline_end_date = _shift(previous.baseline_end_date, version.end_delta_days)
    version.baseline_billable = previous.baseline_billable + version.cost_delta
    _copy_signatures(version, variation)
    db.session.add(version)
    db.session.flush()

    snapshot = reconcile(history + [version])
    milestone.baseline_start_date = snapshot.baseline_start_date
    milestone.baseline_end_date = snapshot.baseline_end_date
    milestone.baseline_billable = snapshot.baseline_billable
    return version
