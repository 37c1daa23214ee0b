"""
Permission Service — the access-control engine.

Answers "may this identity perform this action on this record?".
Evaluation is deterministic and deny-by-default, short-circuiting on the
first allow:

  1. system administrator      → allow_system_admin
  2. org_admin of the project's organisation, evaluated as project
     role ``admin``            → allow_org_admin
  3. active ProjectMembership role found in the matrix cell
                               → allow_project_role
  4. ownership exception (OWNERSHIP_RULES) for the record's owner
                               → allow_ownership

Anything else is an ordinary denial and returns False.  Unknown entity
types or actions are malformed input and raise ValidationError.

Membership lookups may be memoised on ``flask.g`` for the life of one
HTTP request; outside a request nothing is cached, so role changes are
visible on the next call.
"""

import logging

from flask import current_app, g, has_request_context

from tracker.core.exceptions import PermissionDenied, ValidationError
from tracker.models import db
from tracker.models.permission_matrix import (
    ADMIN,
    CONDITIONAL_ACTIONS,
    ORG_PERMISSION_MATRIX,
    OWNERSHIP_RULES,
    PERMISSION_MATRIX,
    actions_for,
)
from tracker.models.project import Project
from tracker.services import tenancy_resolver

logger = logging.getLogger(__name__)


# ── Request-scoped memo ─────────────────────────────────────────────────────


def _request_cache():
    if not has_request_context():
        return None
    if not current_app.config.get("PERMISSION_REQUEST_CACHE", True):
        return None
    cache = getattr(g, "_membership_cache", None)
    if cache is None:
        cache = g._membership_cache = {}
    return cache


def invalidate_request_cache():
    """Drop memoised memberships; called after any membership write."""
    if has_request_context():
        g._membership_cache = {}


def _project_standing(user_id, project):
    """Return (is_org_admin, has_org_membership, project_role | None)."""
    cache = _request_cache()
    key = (user_id, project.id)
    if cache is not None and key in cache:
        return cache[key]

    is_org_admin = False
    has_org_membership = project.organisation_id is None
    if project.organisation_id is not None:
        om = tenancy_resolver.active_org_membership(user_id, project.organisation_id)
        if om is not None:
            has_org_membership = True
            is_org_admin = om.is_org_admin

    pm = tenancy_resolver.active_project_membership(user_id, project.id)
    standing = (is_org_admin, has_org_membership, pm.role if pm is not None else None)
    if cache is not None:
        cache[key] = standing
    return standing


# ── Matrix helpers ──────────────────────────────────────────────────────────


def _validate(entity_type, action):
    if entity_type not in PERMISSION_MATRIX:
        raise ValidationError(
            f"Unknown entity_type '{entity_type}'",
            details={"valid_entity_types": sorted(PERMISSION_MATRIX)},
            rule="UnknownEntityType",
        )
    if action not in actions_for(entity_type):
        raise ValidationError(
            f"Unknown action '{action}' for {entity_type}",
            details={"valid_actions": sorted(actions_for(entity_type))},
            rule="UnknownAction",
        )


def _matrix_actions(entity_type, action, record):
    """Matrix cells to consult for *action* (several for conditional actions without a record)."""
    conditional = CONDITIONAL_ACTIONS.get(entity_type, {}).get(action)
    if conditional is None:
        return [action]
    attribute, mapping = conditional
    if record is None:
        return list(mapping.values())
    return [mapping[bool(getattr(record, attribute))]]


def roles_allow(roles, entity_type, matrix_actions):
    """True if any of *roles* is in any of the *matrix_actions* cells."""
    cells = PERMISSION_MATRIX[entity_type]
    return any(roles & cells.get(a, frozenset()) for a in matrix_actions)


def _ownership_allows(entity_type, action, record, user_id, role):
    states = OWNERSHIP_RULES.get(entity_type, {}).get(action)
    if not states or record is None or role is None:
        return False
    owner_id = getattr(record, "owner_user_id", None)
    return owner_id is not None and owner_id == user_id and record.status in states


def _decision(allowed, rule, *, role=None, project_id=None):
    return {"allowed": allowed, "rule": rule, "role": role, "project_id": project_id}


# ── Public API ──────────────────────────────────────────────────────────────


def evaluate_permission(identity, action, entity_type, record=None, *, project_id=None):
    """Full decision: ``{"allowed", "rule", "role", "project_id"}``.

    The scope is the record's project; without a record, *project_id*;
    without either, any active membership of the user.
    """
    _validate(entity_type, action)
    matrix_actions = _matrix_actions(entity_type, action, record)

    if not identity.session_valid:
        return _decision(False, "deny_session_invalid")
    user = tenancy_resolver.load_user(identity.user_id)
    if user is None:
        return _decision(False, "deny_unknown_user")

    # 1. System administrator
    if user.is_system_admin:
        return _decision(True, "allow_system_admin", role=ADMIN)

    scope_project_id = record.project_id if record is not None else project_id
    if scope_project_id is None:
        return _evaluate_unscoped(user, entity_type, matrix_actions)

    project = db.session.get(Project, scope_project_id)
    if project is None:
        return _decision(False, "deny_unknown_project", project_id=scope_project_id)

    is_org_admin, has_org_membership, role = _project_standing(user.id, project)

    # 2. Organisation administrator → project admin
    if is_org_admin and roles_allow({ADMIN}, entity_type, matrix_actions):
        return _decision(True, "allow_org_admin", role=ADMIN, project_id=project.id)

    if not has_org_membership or role is None:
        return _decision(False, "deny_no_membership", project_id=project.id)

    # 3. Project role
    if roles_allow({role}, entity_type, matrix_actions):
        return _decision(True, "allow_project_role", role=role, project_id=project.id)

    # 4. Ownership exception
    if _ownership_allows(entity_type, action, record, user.id, role):
        return _decision(True, "allow_ownership", role=role, project_id=project.id)

    return _decision(False, "deny_by_default", role=role, project_id=project.id)


def _evaluate_unscoped(user, entity_type, matrix_actions):
    org_memberships, project_memberships = tenancy_resolver.all_active_memberships(user.id)
    if any(m.is_org_admin for m in org_memberships) and roles_allow({ADMIN}, entity_type, matrix_actions):
        return _decision(True, "allow_org_admin", role=ADMIN)
    for pm in project_memberships:
        if roles_allow({pm.role}, entity_type, matrix_actions):
            return _decision(True, "allow_project_role", role=pm.role, project_id=pm.project_id)
    if not org_memberships and not project_memberships:
        return _decision(False, "deny_no_membership")
    return _decision(False, "deny_by_default")


def can_perform(identity, action, entity_type, record=None, *, project_id=None):
    """Boolean form of :func:`evaluate_permission`; never raises for a denial."""
    return evaluate_permission(identity, action, entity_type, record, project_id=project_id)["allowed"]


def check_permission(identity, action, entity_type, record=None, *, project_id=None):
    """Raise PermissionDenied (naming the rule) unless the action is allowed.

    Returns the decision dict on success.
    """
    decision = evaluate_permission(identity, action, entity_type, record, project_id=project_id)
    if not decision["allowed"]:
        logger.info(
            "Permission denied",
            extra={
                "user_id": identity.user_id,
                "action": action,
                "entity_type": entity_type,
                "project_id": decision["project_id"],
                "rule": decision["rule"],
            },
        )
        raise PermissionDenied(action, entity_type, rule=decision["rule"])
    return decision


def effective_project_roles(identity, project_id):
    """Project roles the identity acts with on *project_id* (admin for overrides)."""
    user = tenancy_resolver.load_user(identity.user_id) if identity.session_valid else None
    if user is None:
        return set()
    if user.is_system_admin:
        return {ADMIN}
    project = db.session.get(Project, project_id)
    if project is None:
        return set()
    is_org_admin, has_org_membership, role = _project_standing(user.id, project)
    roles = set()
    if is_org_admin:
        roles.add(ADMIN)
    if has_org_membership and role is not None:
        roles.add(role)
    return roles


# ── Organisation-level checks ───────────────────────────────────────────────


def can_perform_org(identity, action, area, organisation_id):
    """Organisation-level matrix check (members, projects, settings)."""
    cell = ORG_PERMISSION_MATRIX.get(area, {}).get(action)
    if cell is None:
        raise ValidationError(f"Unknown organisation action '{area}.{action}'", rule="UnknownAction")
    if not identity.session_valid:
        return False
    user = tenancy_resolver.load_user(identity.user_id)
    if user is None:
        return False
    if user.is_system_admin:
        return True
    om = tenancy_resolver.active_org_membership(user.id, organisation_id)
    return om is not None and om.org_role in cell


def check_org_permission(identity, action, area, organisation_id):
    if not can_perform_org(identity, action, area, organisation_id):
        logger.info(
            "Organisation permission denied",
            extra={"user_id": identity.user_id, "organisation_id": organisation_id, "action": action},
        )
        raise PermissionDenied(action, area, rule="deny_org_role")
