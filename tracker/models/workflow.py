"""
Workflow entity models — milestones, deliverables, variations,
certificates, timesheets and expenses.

Every entity here carries a status column that only
``tracker.services.workflow_engine.attempt_transition`` writes, zero to
two signature slots, and the soft-delete triple.

Transition data lives next to the models (as plain dicts and frozen
dataclasses) so that policy changes do not touch the engine:

    <ENTITY>_STATES        – finite state set
    <ENTITY>_TRANSITIONS   – {action: {"from": [states], "to": state}}
                             for the non-signing actions
    <ENTITY>_SIGNATURES    – SignatureRequirement: which slots exist,
                             which matrix action authorises each slot,
                             from which states signing is legal and
                             which state both slots lead to
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.orm import declared_attr

from tracker.models import db
from tracker.models.soft_delete import SoftDeleteMixin


# ═════════════════════════════════════════════════════════════════════════════
# Signature declarations
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class SignatureSlot:
    """One signer position on a record.

    Columns on the record: ``<column_prefix>_signed_by_id``,
    ``<column_prefix>_signer_name`` and ``<column_prefix>_signed_at``.
    ``awaiting_state`` is where a dual-signature record waits when only
    this slot is filled.
    """

    name: str
    column_prefix: str
    matrix_action: str
    awaiting_state: str | None = None

    @property
    def signed_by_column(self):
        return f"{self.column_prefix}_signed_by_id"

    @property
    def signer_name_column(self):
        return f"{self.column_prefix}_signer_name"

    @property
    def signed_at_column(self):
        return f"{self.column_prefix}_signed_at"

    def is_filled(self, record):
        return getattr(record, self.signed_by_column) is not None


@dataclass(frozen=True)
class SignatureRequirement:
    """Signature policy of one workflow.

    mode:            "none" | "single" | "dual"
    actions:         signing action → slot name (None = resolve from role)
    open_states:     states from which a signing action is legal
    completed_state: state reached once every slot is filled
    """

    mode: str = "none"
    slots: tuple = ()
    actions: dict = field(default_factory=dict)
    open_states: tuple = ()
    completed_state: str | None = None

    def slot(self, name):
        for s in self.slots:
            if s.name == name:
                return s
        return None

    def is_signing_action(self, action):
        return action in self.actions


NO_SIGNATURE = SignatureRequirement()

AWAITING_SUPPLIER = "awaiting_supplier_sign"
AWAITING_CUSTOMER = "awaiting_customer_sign"

DUAL_SIGN_ACTIONS = {
    "sign": None,
    "sign_as_supplier": "supplier",
    "sign_as_customer": "customer",
}


def _dual_slots(prefix=""):
    return (
        SignatureSlot("supplier", f"{prefix}supplier", "sign_as_supplier", AWAITING_CUSTOMER),
        SignatureSlot("customer", f"{prefix}customer", "sign_as_customer", AWAITING_SUPPLIER),
    )


# ═════════════════════════════════════════════════════════════════════════════
# Transition tables
# ═════════════════════════════════════════════════════════════════════════════

# ── Milestone baseline ───────────────────────────────────────────────────────
BASELINE_STATES = ["draft", AWAITING_SUPPLIER, AWAITING_CUSTOMER, "locked"]
BASELINE_TRANSITIONS: dict = {}
BASELINE_SIGNATURES = SignatureRequirement(
    mode="dual",
    slots=_dual_slots("baseline_"),
    actions=DUAL_SIGN_ACTIONS,
    open_states=("draft", AWAITING_SUPPLIER, AWAITING_CUSTOMER),
    completed_state="locked",
)

# ── Deliverable ──────────────────────────────────────────────────────────────
DELIVERABLE_STATES = [
    "not_started", "in_progress", "submitted_for_review",
    "returned_for_work", "review_complete",
    AWAITING_SUPPLIER, AWAITING_CUSTOMER, "delivered",
]
DELIVERABLE_TRANSITIONS = {
    "start": {"from": ["not_started", "returned_for_work"], "to": "in_progress"},
    "submit_for_review": {"from": ["in_progress"], "to": "submitted_for_review"},
    "complete_review": {"from": ["submitted_for_review"], "to": "review_complete"},
    "return_for_work": {"from": ["submitted_for_review"], "to": "returned_for_work"},
}
DELIVERABLE_SIGNATURES = SignatureRequirement(
    mode="dual",
    slots=_dual_slots(),
    actions=DUAL_SIGN_ACTIONS,
    open_states=("review_complete", AWAITING_SUPPLIER, AWAITING_CUSTOMER),
    completed_state="delivered",
)

# ── Variation (change request) ───────────────────────────────────────────────
VARIATION_STATES = [
    "draft", "submitted", AWAITING_SUPPLIER, AWAITING_CUSTOMER,
    "approved", "applied", "rejected",
]
VARIATION_TRANSITIONS = {
    "submit": {"from": ["draft"], "to": "submitted"},
    "reject": {"from": ["submitted", AWAITING_SUPPLIER, AWAITING_CUSTOMER], "to": "rejected"},
    # Re-drives application for a variation left in "approved"
    "apply": {"from": ["approved"], "to": "applied"},
}
VARIATION_SIGNATURES = SignatureRequirement(
    mode="dual",
    slots=_dual_slots(),
    actions=DUAL_SIGN_ACTIONS,
    open_states=("submitted", AWAITING_SUPPLIER, AWAITING_CUSTOMER),
    completed_state="approved",
)
VARIATION_TYPES = {"scope_extension", "scope_reduction", "time_extension", "cost_adjustment", "combined"}

# ── Milestone certificate ────────────────────────────────────────────────────
CERTIFICATE_STATES = ["pending", AWAITING_SUPPLIER, AWAITING_CUSTOMER, "accepted"]
CERTIFICATE_TRANSITIONS: dict = {}
CERTIFICATE_SIGNATURES = SignatureRequirement(
    mode="dual",
    slots=_dual_slots(),
    actions=DUAL_SIGN_ACTIONS,
    open_states=("pending", AWAITING_SUPPLIER, AWAITING_CUSTOMER),
    completed_state="accepted",
)

# ── Timesheet ────────────────────────────────────────────────────────────────
TIMESHEET_STATES = ["draft", "submitted", "approved", "rejected"]
TIMESHEET_TRANSITIONS = {
    "submit": {"from": ["draft", "rejected"], "to": "submitted"},
    "reject": {"from": ["submitted"], "to": "rejected"},
}
TIMESHEET_SIGNATURES = SignatureRequirement(
    mode="single",
    slots=(SignatureSlot("approver", "approver", "approve"),),
    actions={"approve": "approver"},
    open_states=("submitted",),
    completed_state="approved",
)

# ── Expense ──────────────────────────────────────────────────────────────────
EXPENSE_STATES = ["draft", "submitted", "validated", "rejected"]
EXPENSE_TRANSITIONS = {
    "submit": {"from": ["draft", "rejected"], "to": "submitted"},
    "reject": {"from": ["submitted"], "to": "rejected"},
}
EXPENSE_SIGNATURES = SignatureRequirement(
    mode="single",
    slots=(SignatureSlot("approver", "approver", "validate"),),
    actions={"validate": "approver"},
    open_states=("submitted",),
    completed_state="validated",
)
EXPENSE_CATEGORIES = {"travel", "accommodation", "sustenance"}


# ═════════════════════════════════════════════════════════════════════════════
# Column mixins
# ═════════════════════════════════════════════════════════════════════════════


def _signer_fk():
    return db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)


def _iso(value):
    return value.isoformat() if value else None


def _money(value):
    return str(value) if value is not None else None


class DualSignatureMixin:
    """Supplier and customer signature slots."""

    @declared_attr
    def supplier_signed_by_id(cls):
        return _signer_fk()

    supplier_signer_name = db.Column(db.String(200))
    supplier_signed_at = db.Column(db.DateTime)

    @declared_attr
    def customer_signed_by_id(cls):
        return _signer_fk()

    customer_signer_name = db.Column(db.String(200))
    customer_signed_at = db.Column(db.DateTime)

    def signatures_dict(self):
        return {
            "supplier": {
                "signed_by_id": self.supplier_signed_by_id,
                "signer_name": self.supplier_signer_name,
                "signed_at": _iso(self.supplier_signed_at),
            },
            "customer": {
                "signed_by_id": self.customer_signed_by_id,
                "signer_name": self.customer_signer_name,
                "signed_at": _iso(self.customer_signed_at),
            },
        }


class SingleApprovalMixin:
    """One approver slot plus rejection details."""

    @declared_attr
    def approver_signed_by_id(cls):
        return _signer_fk()

    approver_signer_name = db.Column(db.String(200))
    approver_signed_at = db.Column(db.DateTime)
    rejection_reason = db.Column(db.Text)

    @declared_attr
    def created_by_id(cls):
        return db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    @declared_attr
    def resource_id(cls):
        return db.Column(
            db.Integer, db.ForeignKey("resources.id", ondelete="SET NULL"), nullable=True, index=True,
        )

    @declared_attr
    def resource(cls):
        return db.relationship("Resource")

    @property
    def owner_user_id(self):
        """User the ownership exception applies to."""
        if self.resource is not None and self.resource.user_id is not None:
            return self.resource.user_id
        return self.created_by_id


# ═════════════════════════════════════════════════════════════════════════════
# Models
# ═════════════════════════════════════════════════════════════════════════════


class Milestone(SoftDeleteMixin, db.Model):
    """Billable milestone with a dual-signed original baseline.

    ``start_date`` / ``forecast_end_date`` / ``billable`` are the working
    copy; ``baseline_*`` fields are a denormalised copy of the reconciled
    baseline history, rewritten by whoever appends a BaselineVersion.
    """

    __tablename__ = "milestones"
    __table_args__ = (
        db.UniqueConstraint("project_id", "milestone_ref", name="uq_milestone_project_ref"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    milestone_ref = db.Column(db.String(30), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")

    # Working copy
    start_date = db.Column(db.Date)
    forecast_end_date = db.Column(db.Date)
    billable = db.Column(db.Numeric(14, 2), default=0)

    # Denormalised baseline
    baseline_start_date = db.Column(db.Date)
    baseline_end_date = db.Column(db.Date)
    baseline_billable = db.Column(db.Numeric(14, 2))

    baseline_status = db.Column(db.String(30), nullable=False, default="draft")
    baseline_supplier_signed_by_id = _signer_fk()
    baseline_supplier_signer_name = db.Column(db.String(200))
    baseline_supplier_signed_at = db.Column(db.DateTime)
    baseline_customer_signed_by_id = _signer_fk()
    baseline_customer_signer_name = db.Column(db.String(200))
    baseline_customer_signed_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    deliverables = db.relationship("Deliverable", back_populates="milestone", lazy="select")

    @property
    def is_baseline_locked(self):
        return self.baseline_status == "locked"

    @property
    def has_baseline_signature(self):
        return (
            self.baseline_supplier_signed_by_id is not None
            or self.baseline_customer_signed_by_id is not None
        )

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "milestone_ref": self.milestone_ref,
            "name": self.name,
            "description": self.description,
            "start_date": _iso(self.start_date),
            "forecast_end_date": _iso(self.forecast_end_date),
            "billable": _money(self.billable),
            "baseline_start_date": _iso(self.baseline_start_date),
            "baseline_end_date": _iso(self.baseline_end_date),
            "baseline_billable": _money(self.baseline_billable),
            "baseline_status": self.baseline_status,
            "baseline_signatures": {
                "supplier": {
                    "signed_by_id": self.baseline_supplier_signed_by_id,
                    "signer_name": self.baseline_supplier_signer_name,
                    "signed_at": _iso(self.baseline_supplier_signed_at),
                },
                "customer": {
                    "signed_by_id": self.baseline_customer_signed_by_id,
                    "signer_name": self.baseline_customer_signer_name,
                    "signed_at": _iso(self.baseline_customer_signed_at),
                },
            },
            **self.tombstone_dict(),
        }

    def __repr__(self):
        return f"<Milestone {self.id}: {self.milestone_ref} baseline={self.baseline_status}>"


class Deliverable(SoftDeleteMixin, DualSignatureMixin, db.Model):
    __tablename__ = "deliverables"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    milestone_id = db.Column(
        db.Integer, db.ForeignKey("milestones.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    deliverable_ref = db.Column(db.String(30), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(db.String(30), nullable=False, default="not_started")
    due_date = db.Column(db.Date)
    delivered_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    milestone = db.relationship("Milestone", back_populates="deliverables")

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "milestone_id": self.milestone_id,
            "deliverable_ref": self.deliverable_ref,
            "name": self.name,
            "status": self.status,
            "due_date": _iso(self.due_date),
            "delivered_at": _iso(self.delivered_at),
            "signatures": self.signatures_dict(),
            **self.tombstone_dict(),
        }

    def __repr__(self):
        return f"<Deliverable {self.id}: {self.deliverable_ref} {self.status}>"


class Variation(SoftDeleteMixin, DualSignatureMixin, db.Model):
    """Change request against one or more locked milestone baselines."""

    __tablename__ = "variations"
    __table_args__ = (
        db.UniqueConstraint("project_id", "variation_ref", name="uq_variation_project_ref"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    variation_ref = db.Column(db.String(20), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    variation_type = db.Column(db.String(30), nullable=False, default="combined")
    status = db.Column(db.String(30), nullable=False, default="draft")

    total_cost_impact = db.Column(db.Numeric(14, 2), default=0)
    total_days_impact = db.Column(db.Integer, default=0)

    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    submitted_at = db.Column(db.DateTime)
    approved_at = db.Column(db.DateTime)
    applied_at = db.Column(db.DateTime)
    certificate_number = db.Column(db.String(50))

    rejected_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rejected_at = db.Column(db.DateTime)
    rejection_reason = db.Column(db.Text)

    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    affected_milestones = db.relationship(
        "VariationMilestone",
        back_populates="variation",
        cascade="all, delete-orphan",
        order_by="VariationMilestone.id",
    )

    def to_dict(self, include_milestones=True):
        d = {
            "id": self.id,
            "project_id": self.project_id,
            "variation_ref": self.variation_ref,
            "title": self.title,
            "description": self.description,
            "variation_type": self.variation_type,
            "status": self.status,
            "total_cost_impact": _money(self.total_cost_impact),
            "total_days_impact": self.total_days_impact,
            "submitted_at": _iso(self.submitted_at),
            "approved_at": _iso(self.approved_at),
            "applied_at": _iso(self.applied_at),
            "certificate_number": self.certificate_number,
            "rejected_by_id": self.rejected_by_id,
            "rejected_at": _iso(self.rejected_at),
            "rejection_reason": self.rejection_reason,
            "signatures": self.signatures_dict(),
            **self.tombstone_dict(),
        }
        if include_milestones:
            d["affected_milestones"] = [vm.to_dict() for vm in self.affected_milestones]
        return d

    def __repr__(self):
        return f"<Variation {self.id}: {self.variation_ref} {self.status}>"


class VariationMilestone(db.Model):
    """Declared impact of a variation on one milestone.

    A delta of None means the field is not impacted; zero is an explicit
    "impacted, no change".
    """

    __tablename__ = "variation_milestones"
    __table_args__ = (
        db.UniqueConstraint("variation_id", "milestone_id", name="uq_variation_milestone"),
    )

    id = db.Column(db.Integer, primary_key=True)
    variation_id = db.Column(
        db.Integer, db.ForeignKey("variations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    milestone_id = db.Column(
        db.Integer, db.ForeignKey("milestones.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    cost_delta = db.Column(db.Numeric(14, 2), nullable=True)
    start_delta_days = db.Column(db.Integer, nullable=True)
    end_delta_days = db.Column(db.Integer, nullable=True)
    rationale = db.Column(db.Text, default="")
    baseline_version_before = db.Column(db.Integer)
    baseline_version_after = db.Column(db.Integer)

    variation = db.relationship("Variation", back_populates="affected_milestones")
    milestone = db.relationship("Milestone")

    def to_dict(self):
        return {
            "id": self.id,
            "variation_id": self.variation_id,
            "milestone_id": self.milestone_id,
            "cost_delta": _money(self.cost_delta),
            "start_delta_days": self.start_delta_days,
            "end_delta_days": self.end_delta_days,
            "rationale": self.rationale,
            "baseline_version_before": self.baseline_version_before,
            "baseline_version_after": self.baseline_version_after,
        }


class MilestoneCertificate(SoftDeleteMixin, DualSignatureMixin, db.Model):
    """Dual-signed acceptance of a milestone; requires every deliverable delivered."""

    __tablename__ = "milestone_certificates"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    milestone_id = db.Column(
        db.Integer, db.ForeignKey("milestones.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    certificate_number = db.Column(db.String(50), nullable=False)
    status = db.Column(db.String(30), nullable=False, default="pending")
    payment_amount = db.Column(db.Numeric(14, 2))
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    accepted_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    milestone = db.relationship("Milestone")

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "milestone_id": self.milestone_id,
            "certificate_number": self.certificate_number,
            "status": self.status,
            "payment_amount": _money(self.payment_amount),
            "accepted_at": _iso(self.accepted_at),
            "signatures": self.signatures_dict(),
            **self.tombstone_dict(),
        }


class Timesheet(SoftDeleteMixin, SingleApprovalMixin, db.Model):
    __tablename__ = "timesheets"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    milestone_id = db.Column(db.Integer, db.ForeignKey("milestones.id", ondelete="SET NULL"), nullable=True)
    work_date = db.Column(db.Date, nullable=False)
    hours = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    description = db.Column(db.Text, default="")
    status = db.Column(db.String(20), nullable=False, default="draft")
    submitted_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "resource_id": self.resource_id,
            "milestone_id": self.milestone_id,
            "work_date": _iso(self.work_date),
            "hours": _money(self.hours),
            "description": self.description,
            "status": self.status,
            "approved_by_id": self.approver_signed_by_id,
            "approved_at": _iso(self.approver_signed_at),
            "rejection_reason": self.rejection_reason,
            **self.tombstone_dict(),
        }


class Expense(SoftDeleteMixin, SingleApprovalMixin, db.Model):
    __tablename__ = "expenses"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    expense_date = db.Column(db.Date, nullable=False)
    category = db.Column(db.String(30), nullable=False, default="travel")
    amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    description = db.Column(db.Text, default="")
    chargeable_to_customer = db.Column(db.Boolean, nullable=False, default=True)
    status = db.Column(db.String(20), nullable=False, default="draft")
    submitted_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "resource_id": self.resource_id,
            "expense_date": _iso(self.expense_date),
            "category": self.category,
            "amount": _money(self.amount),
            "description": self.description,
            "chargeable_to_customer": self.chargeable_to_customer,
            "status": self.status,
            "validated_by_id": self.approver_signed_by_id,
            "validated_at": _iso(self.approver_signed_at),
            "rejection_reason": self.rejection_reason,
            **self.tombstone_dict(),
        }


# Entity type (as used in the permission matrix) → model
ENTITY_MODELS = {
    "milestones": Milestone,
    "deliverables": Deliverable,
    "variations": Variation,
    "certificates": MilestoneCertificate,
    "timesheets": Timesheet,
    "expenses": Expense,
}
