"""
Milestone baseline history.

Models:
    - BaselineVersion: immutable, append-only snapshot of a milestone's
      baseline. Version 1 is the dual-signed original (no variation);
      every later version is produced by exactly one applied variation
      and records that variation's deltas.

Rows are never updated (a before_update listener refuses it).

Invariants enforced by the schema:
    - (milestone_id, version) is unique
    - (milestone_id, variation_id) is unique, so a variation can add at
      most one version per milestone
"""

from datetime import datetime, timezone

from sqlalchemy import event as _sa_event

from tracker.models import db


class BaselineVersion(db.Model):
    __tablename__ = "milestone_baseline_versions"
    __table_args__ = (
        db.UniqueConstraint("milestone_id", "version", name="uq_baseline_milestone_version"),
        db.UniqueConstraint("milestone_id", "variation_id", name="uq_baseline_milestone_variation"),
        db.Index("idx_baseline_milestone", "milestone_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    milestone_id = db.Column(
        db.Integer, db.ForeignKey("milestones.id", ondelete="CASCADE"), nullable=False,
    )
    version = db.Column(db.Integer, nullable=False)
    variation_id = db.Column(
        db.Integer, db.ForeignKey("variations.id", ondelete="RESTRICT"), nullable=True,
        comment="NULL only for version 1 (original baseline)",
    )

    # Snapshot after this version was applied
    baseline_start_date = db.Column(db.Date)
    baseline_end_date = db.Column(db.Date)
    baseline_billable = db.Column(db.Numeric(14, 2))

    # Deltas introduced by this version (zero for version 1)
    start_delta_days = db.Column(db.Integer, nullable=False, default=0)
    end_delta_days = db.Column(db.Integer, nullable=False, default=0)
    cost_delta = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    # Signature metadata copied from the approval that produced the version
    supplier_signed_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    supplier_signer_name = db.Column(db.String(200))
    supplier_signed_at = db.Column(db.DateTime)
    customer_signed_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    customer_signer_name = db.Column(db.String(200))
    customer_signed_at = db.Column(db.DateTime)

    created_at = db.Column(
        db.DateTime, nullable=False, default=lambda: datetime.now(timezone.utc),
    )

    variation = db.relationship("Variation")

    def to_dict(self):
        return {
            "id": self.id,
            "milestone_id": self.milestone_id,
            "version": self.version,
            "variation_id": self.variation_id,
            "variation_ref": self.variation.variation_ref if self.variation else None,
            "baseline_start_date": self.baseline_start_date.isoformat() if self.baseline_start_date else None,
            "baseline_end_date": self.baseline_end_date.isoformat() if self.baseline_end_date else None,
            "baseline_billable": str(self.baseline_billable) if self.baseline_billable is not None else None,
            "start_delta_days": self.start_delta_days,
            "end_delta_days": self.end_delta_days,
            "cost_delta": str(self.cost_delta) if self.cost_delta is not None else "0.00",
            "supplier_signer_name": self.supplier_signer_name,
            "supplier_signed_at": self.supplier_signed_at.isoformat() if self.supplier_signed_at else None,
            "customer_signer_name": self.customer_signer_name,
            "customer_signed_at": self.customer_signed_at.isoformat() if self.customer_signed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<BaselineVersion milestone={self.milestone_id} v{self.version}>"


@_sa_event.listens_for(BaselineVersion, "before_update")
def _block_version_update(mapper, connection, target):
    """History rows are written once; corrections go through a new variation."""
    raise RuntimeError(
        f"BaselineVersion {target.id} (milestone {target.milestone_id} v{target.version}) is immutable"
    )
