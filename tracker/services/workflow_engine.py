"""
Workflow Engine — the one way a workflow entity changes state.

A generic state machine parameterised per entity type by a
``WorkflowDefinition``: state set, transition table, signature
requirement (none / single / dual), guards, and hooks.  Transition data
lives in ``tracker.models.workflow``; this module wires it to the
permission engine and to the side effects.

attempt_transition(entity_type, record_id, action, identity) runs, in one
transaction:

  1. load the record FOR UPDATE (tombstoned records are not found)
  2. permission check                   → PermissionDenied
  3. terminal-state check               → AlreadyInTerminalState
  4. legality from the current state    → IllegalTransition
  5. guards                             → MissingPrerequisite / ValidationError
  6. signing actions: resolve the slot  → UnauthorizedSigner, write the
     slot with a single-row UPDATE, re-read both slots, derive the state
  7. hooks and the terminal side effect (baseline lock, variation apply)
  8. audit row, single commit

Any failure rolls back everything, so a record is never left signed but
unversioned.  Store timeouts surface as TransientFailure.  Notifications
go out only after the commit.

Usage:
    from tracker.services.workflow_engine import attempt_transition

    result = attempt_transition("milestones", 12, "sign", identity)
    result.new_state          # "awaiting_customer_sign"
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from tracker.core.exceptions import (
    AlreadyInTerminalState,
    IllegalTransition,
    MissingPrerequisite,
    NotFoundError,
    TransientFailure,
    UnauthorizedSigner,
    ValidationError,
)
from tracker.models import db
from tracker.models.audit import write_audit
from tracker.models.workflow import (
    BASELINE_SIGNATURES,
    BASELINE_STATES,
    BASELINE_TRANSITIONS,
    CERTIFICATE_SIGNATURES,
    CERTIFICATE_STATES,
    CERTIFICATE_TRANSITIONS,
    DELIVERABLE_SIGNATURES,
    DELIVERABLE_STATES,
    DELIVERABLE_TRANSITIONS,
    ENTITY_MODELS,
    EXPENSE_SIGNATURES,
    EXPENSE_STATES,
    EXPENSE_TRANSITIONS,
    NO_SIGNATURE,
    TIMESHEET_SIGNATURES,
    TIMESHEET_STATES,
    TIMESHEET_TRANSITIONS,
    VARIATION_SIGNATURES,
    VARIATION_STATES,
    VARIATION_TRANSITIONS,
    Deliverable,
    Expense,
    Milestone,
    MilestoneCertificate,
    SignatureRequirement,
    Timesheet,
    Variation,
)
from tracker.services import baseline_service, tenancy_resolver, variation_service
from tracker.services.notification import NotificationService
from tracker.services.permission_service import can_perform, check_permission

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Types
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class TransitionContext:
    """What guards and hooks get to see besides the record."""

    identity: object
    user: object
    action: str
    reason: str | None = None
    slot: str | None = None


@dataclass
class TransitionResult:
    entity_type: str
    record_id: int
    previous_state: str
    new_state: str
    signature_recorded: str | None = None
    applied_side_effects: list = field(default_factory=list)

    def to_dict(self):
        return {
            "entity_type": self.entity_type,
            "record_id": self.record_id,
            "previous_state": self.previous_state,
            "new_state": self.new_state,
            "signature_recorded": self.signature_recorded,
            "applied_side_effects": list(self.applied_side_effects),
        }


@dataclass
class WorkflowDefinition:
    """Per-entity configuration of the generic engine.

    transitions: {action: {"from": [states], "to": state}} for non-signing actions
    permissions: action → matrix action, where they differ
    guards:      action → [guard(record, ctx)]; a guard raises to block
    hooks:       action → hook(record, ctx) -> list of side-effect labels
    on_complete: run when the signature requirement is fully met
    follow_up:   state → action chained in the same transaction
    """

    entity_type: str
    model: type
    states: list
    initial_state: str
    terminal_states: frozenset
    transitions: dict
    signatures: SignatureRequirement = NO_SIGNATURE
    status_attr: str = "status"
    permissions: dict = field(default_factory=dict)
    guards: dict = field(default_factory=dict)
    hooks: dict = field(default_factory=dict)
    on_complete: Callable | None = None
    follow_up: dict = field(default_factory=dict)

    def actions(self):
        return set(self.transitions) | set(self.signatures.actions)

    def permission_for(self, action):
        return self.permissions.get(action, action)

    def state_of(self, record):
        return getattr(record, self.status_attr)

    def set_state(self, record, state):
        setattr(record, self.status_attr, state)

    def allowed_actions(self, state):
        """Actions legal from *state* (ignores permissions and guards)."""
        if state in self.terminal_states:
            return []
        allowed = [a for a, t in self.transitions.items() if state in t["from"]]
        if state in self.signatures.open_states:
            allowed.extend(self.signatures.actions)
        return sorted(allowed)


# ═════════════════════════════════════════════════════════════════════════════
# Guards and hooks
# ═════════════════════════════════════════════════════════════════════════════


def _now():
    return datetime.now(timezone.utc)


def _require_reason(record, ctx):
    if not isinstance(ctx.reason, str) or not ctx.reason.strip():
        raise ValidationError(
            f"A reason is required to {ctx.action}",
            details={"reason": "required"},
            rule="ReasonRequired",
        )


def outstanding_deliverables(milestone):
    """Live deliverables of *milestone* not yet delivered, as unmet-condition dicts."""
    return [
        {
            "deliverable_id": d.id,
            "deliverable_ref": d.deliverable_ref,
            "name": d.name,
            "status": d.status,
        }
        for d in milestone.deliverables
        if not d.is_deleted and d.status != "delivered"
    ]


def _require_deliverables_delivered(certificate, ctx):
    if certificate.status != "pending":
        return
    unmet = outstanding_deliverables(certificate.milestone)
    if unmet:
        raise MissingPrerequisite(
            f"{len(unmet)} deliverable(s) on the milestone are not delivered",
            rule="MissingPrerequisiteDeliverables",
            unmet=unmet,
        )


def _lock_baseline(milestone, ctx):
    version = baseline_service.lock_original_baseline(milestone, actor_user_id=ctx.user.id)
    return [f"baseline_version:{milestone.id}:v{version.version}"]


def _deliverable_delivered(deliverable, ctx):
    deliverable.delivered_at = _now()
    return ["deliverable_delivered"]


def _certificate_accepted(certificate, ctx):
    certificate.accepted_at = _now()
    return ["certificate_accepted"]


def _stamp_submitted(record, ctx):
    record.submitted_at = _now()
    record.rejection_reason = None
    return []


def _stamp_rejected(record, ctx):
    record.rejection_reason = ctx.reason
    return []


_DUAL_SIGN_PERMISSIONS = {"sign_as_supplier": "sign", "sign_as_customer": "sign"}
_DUAL_SIGN_ACTIONS = ("sign", "sign_as_supplier", "sign_as_customer")


# ═════════════════════════════════════════════════════════════════════════════
# Definitions
# ═════════════════════════════════════════════════════════════════════════════

WORKFLOWS = {
    "milestones": WorkflowDefinition(
        entity_type="milestones",
        model=Milestone,
        states=BASELINE_STATES,
        initial_state="draft",
        terminal_states=frozenset({"locked"}),
        transitions=BASELINE_TRANSITIONS,
        signatures=BASELINE_SIGNATURES,
        status_attr="baseline_status",
        permissions=_DUAL_SIGN_PERMISSIONS,
        on_complete=_lock_baseline,
    ),
    "deliverables": WorkflowDefinition(
        entity_type="deliverables",
        model=Deliverable,
        states=DELIVERABLE_STATES,
        initial_state="not_started",
        terminal_states=frozenset({"delivered"}),
        transitions=DELIVERABLE_TRANSITIONS,
        signatures=DELIVERABLE_SIGNATURES,
        permissions=_DUAL_SIGN_PERMISSIONS,
        on_complete=_deliverable_delivered,
    ),
    "variations": WorkflowDefinition(
        entity_type="variations",
        model=Variation,
        states=VARIATION_STATES,
        initial_state="draft",
        terminal_states=frozenset({"applied", "rejected"}),
        transitions=VARIATION_TRANSITIONS,
        signatures=VARIATION_SIGNATURES,
        permissions=_DUAL_SIGN_PERMISSIONS,
        guards={
            "submit": [variation_service.require_locked_milestones],
            "reject": [_require_reason],
        },
        hooks={
            "submit": variation_service.on_submit,
            "reject": variation_service.on_reject,
            "apply": variation_service.on_apply,
        },
        on_complete=variation_service.on_approved,
        follow_up={"approved": "apply"},
    ),
    "certificates": WorkflowDefinition(
        entity_type="certificates",
        model=MilestoneCertificate,
        states=CERTIFICATE_STATES,
        initial_state="pending",
        terminal_states=frozenset({"accepted"}),
        transitions=CERTIFICATE_TRANSITIONS,
        signatures=CERTIFICATE_SIGNATURES,
        permissions=_DUAL_SIGN_PERMISSIONS,
        guards={a: [_require_deliverables_delivered] for a in _DUAL_SIGN_ACTIONS},
        on_complete=_certificate_accepted,
    ),
    "timesheets": WorkflowDefinition(
        entity_type="timesheets",
        model=Timesheet,
        states=TIMESHEET_STATES,
        initial_state="draft",
        terminal_states=frozenset({"approved"}),
        transitions=TIMESHEET_TRANSITIONS,
        signatures=TIMESHEET_SIGNATURES,
        hooks={"submit": _stamp_submitted, "reject": _stamp_rejected},
    ),
    "expenses": WorkflowDefinition(
        entity_type="expenses",
        model=Expense,
        states=EXPENSE_STATES,
        initial_state="draft",
        terminal_states=frozenset({"validated"}),
        transitions=EXPENSE_TRANSITIONS,
        signatures=EXPENSE_SIGNATURES,
        guards={"reject": [_require_reason]},
        hooks={"submit": _stamp_submitted, "reject": _stamp_rejected},
    ),
}


def get_definition(entity_type):
    definition = WORKFLOWS.get(entity_type)
    if definition is None:
        raise ValidationError(
            f"'{entity_type}' has no workflow",
            details={"valid_entity_types": sorted(WORKFLOWS)},
            rule="UnknownEntityType",
        )
    return definition


def get_model(entity_type):
    model = ENTITY_MODELS.get(entity_type)
    if model is None:
        raise ValidationError(
            f"Unknown entity_type '{entity_type}'",
            details={"valid_entity_types": sorted(ENTITY_MODELS)},
            rule="UnknownEntityType",
        )
    return model


# ═════════════════════════════════════════════════════════════════════════════
# Signature slots
# ═════════════════════════════════════════════════════════════════════════════


def _resolve_slot(definition, record, action, requested, identity):
    """Pick the slot this signing action fills, checking the signer may fill it."""
    sig = definition.signatures
    entity_type = definition.entity_type
    named = sig.actions[action]
    if named and requested and requested != named:
        raise ValidationError(
            f"'{action}' signs the {named} slot, not '{requested}'",
            details={"slot": requested},
            rule="SlotMismatch",
        )
    slot_name = named or requested

    eligible = [
        s.name for s in sig.slots
        if can_perform(identity, s.matrix_action, entity_type, record)
    ]
    if slot_name:
        slot = sig.slot(slot_name)
        if slot is None:
            raise ValidationError(
                f"Unknown signature slot '{slot_name}'",
                details={"valid_slots": [s.name for s in sig.slots]},
                rule="UnknownSlot",
            )
        if slot.name not in eligible:
            raise UnauthorizedSigner(entity_type, slot.name, allowed_slots=eligible)
        return slot

    if not eligible:
        raise UnauthorizedSigner(entity_type, "any", allowed_slots=[])
    if len(eligible) > 1:
        raise ValidationError(
            "Signer is eligible for more than one slot; name the slot to sign",
            details={"eligible_slots": eligible},
            rule="SlotAmbiguous",
        )
    return sig.slot(eligible[0])


def _write_slot(definition, record, slot, user):
    """Single-row UPDATE of one slot's columns, then re-read the record."""
    model = definition.model
    db.session.execute(
        update(model)
        .where(model.id == record.id)
        .values({
            getattr(model, slot.signed_by_column): user.id,
            getattr(model, slot.signer_name_column): user.display_name,
            getattr(model, slot.signed_at_column): _now(),
        })
    )
    # Completion is decided on the stored slots, not on the pre-write copy
    db.session.refresh(record)


def _signed_state(sig, record, current):
    filled = [s for s in sig.slots if s.is_filled(record)]
    if len(filled) == len(sig.slots):
        return sig.completed_state
    if len(filled) == 1 and filled[0].awaiting_state:
        return filled[0].awaiting_state
    return current


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════


def _load_for_update(definition, record_id):
    model = definition.model
    record = db.session.execute(
        select(model)
        .where(model.id == record_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if record is None or record.is_deleted:
        raise NotFoundError(resource=definition.entity_type, resource_id=record_id)
    return record


def attempt_transition(entity_type, record_id, action, identity, *, slot=None, reason=None):
    """Apply *action* to a workflow record on behalf of *identity*.

    Args:
        entity_type: "milestones" (baseline), "deliverables", "variations",
                     "certificates", "timesheets" or "expenses".
        record_id:   primary key of the record.
        action:      a transition action or a signing action.
        identity:    SessionIdentity of the caller.
        slot:        optional explicit signature slot for ``sign``.
        reason:      free text for rejections.

    Returns:
        TransitionResult

    Raises:
        ValidationError, NotFoundError, PermissionDenied,
        AlreadyInTerminalState, IllegalTransition, MissingPrerequisite,
        UnauthorizedSigner, TransientFailure
    """
    definition = get_definition(entity_type)
    if action not in definition.actions():
        raise ValidationError(
            f"Unknown action '{action}' for {entity_type}",
            details={"valid_actions": sorted(definition.actions())},
            rule="UnknownAction",
        )
    sig = definition.signatures
    signing = sig.is_signing_action(action)

    try:
        record = _load_for_update(definition, record_id)
        previous = definition.state_of(record)
        project_id = record.project_id

        check_permission(identity, definition.permission_for(action), entity_type, record)

        if previous in definition.terminal_states:
            raise AlreadyInTerminalState(entity_type, action, previous)

        legal_from = sig.open_states if signing else definition.transitions[action]["from"]
        if previous not in legal_from:
            raise IllegalTransition(entity_type, action, previous)

        user = tenancy_resolver.load_user(identity.user_id)
        ctx = TransitionContext(identity=identity, user=user, action=action, reason=reason, slot=slot)
        for guard in definition.guards.get(action, ()):
            guard(record, ctx)

        effects = []
        recorded = None
        if signing:
            target = _resolve_slot(definition, record, action, slot, identity)
            _write_slot(definition, record, target, user)
            recorded = target.name
            new_state = _signed_state(sig, record, previous)
        else:
            new_state = definition.transitions[action]["to"]
        definition.set_state(record, new_state)

        hook = definition.hooks.get(action)
        if hook is not None:
            effects.extend(hook(record, ctx) or [])
        if signing and new_state == sig.completed_state and definition.on_complete is not None:
            effects.extend(definition.on_complete(record, ctx) or [])

        while new_state in definition.follow_up:
            chained = definition.follow_up[new_state]
            chained_hook = definition.hooks.get(chained)
            if chained_hook is not None:
                effects.extend(chained_hook(record, ctx) or [])
            new_state = definition.transitions[chained]["to"]
            definition.set_state(record, new_state)

        write_audit(
            entity_type=entity_type,
            entity_id=record.id,
            action=f"workflow.{action}",
            actor_user_id=identity.user_id,
            project_id=project_id,
            diff={
                "status": {"old": previous, "new": new_state},
                "slot": recorded,
                "side_effects": effects,
                "reason": reason,
            },
        )
        db.session.commit()
    except OperationalError as exc:
        db.session.rollback()
        logger.warning(
            "Workflow transition hit a store timeout",
            extra={"entity_type": entity_type, "action": action, "user_id": identity.user_id},
        )
        raise TransientFailure(
            f"Could not complete '{action}' on {entity_type} {record_id}; retry the action",
        ) from exc
    except Exception:
        db.session.rollback()
        raise

    result = TransitionResult(
        entity_type=entity_type,
        record_id=record_id,
        previous_state=previous,
        new_state=new_state,
        signature_recorded=recorded,
        applied_side_effects=effects,
    )
    logger.info(
        "Workflow transition %s %s→%s",
        action, previous, new_state,
        extra={
            "entity_type": entity_type,
            "action": action,
            "user_id": identity.user_id,
            "project_id": project_id,
        },
    )
    NotificationService.notify_transition(result, project_id=project_id, actor_user_id=identity.user_id)
    return result


def available_actions(entity_type, record, identity):
    """Actions the identity could attempt on *record* right now (for UI rendering)."""
    definition = get_definition(entity_type)
    return [
        a for a in definition.allowed_actions(definition.state_of(record))
        if can_perform(identity, definition.permission_for(a), entity_type, record)
    ]


def request_certificate(milestone_id, identity):
    """Create the pending certificate for a milestone.

    Raises:
        MissingPrerequisite: a linked deliverable is not delivered; ``unmet``
            names each one.
        IllegalTransition: the milestone already has a live certificate.
    """
    milestone = db.session.get(Milestone, milestone_id)
    if milestone is None or milestone.is_deleted:
        raise NotFoundError(resource="Milestone", resource_id=milestone_id)
    check_permission(identity, "create", "certificates", project_id=milestone.project_id)

    existing = db.session.execute(
        select(MilestoneCertificate).where(
            MilestoneCertificate.milestone_id == milestone.id,
            MilestoneCertificate.is_deleted.is_(False),
        )
    ).scalars().first()
    if existing is not None:
        raise IllegalTransition(
            "certificates", "create", existing.status, rule="CertificateExists",
            message=f"Milestone {milestone.milestone_ref} already has certificate {existing.certificate_number}",
        )

    unmet = outstanding_deliverables(milestone)
    if unmet:
        raise MissingPrerequisite(
            f"Certificate for {milestone.milestone_ref} needs every deliverable delivered",
            rule="MissingPrerequisiteDeliverables",
            unmet=unmet,
        )

    certificate = MilestoneCertificate(
        project_id=milestone.project_id,
        milestone_id=milestone.id,
        certificate_number=f"CERT-{milestone.milestone_ref}",
        status="pending",
        payment_amount=milestone.billable,
        created_by_id=identity.user_id,
    )
    db.session.add(certificate)
    db.session.flush()
    write_audit(
        entity_type="certificates",
        entity_id=certificate.id,
        action="create",
        actor_user_id=identity.user_id,
        project_id=milestone.project_id,
        diff={"milestone_id": milestone.id, "certificate_number": certificate.certificate_number},
    )
    db.session.commit()
    NotificationService.dispatch(
        "certificate.requested",
        {"certificate_id": certificate.id, "milestone_id": milestone.id, "project_id": milestone.project_id},
    )
    return certificate
