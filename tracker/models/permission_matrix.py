"""
Permission matrix — declarative (entity type, action) → allowed roles.

This module is data only.  Policy changes are made here; the engine in
``tracker.services.permission_service`` never hard-codes a role.

    PERMISSION_MATRIX[entity_type][action] -> frozenset of project roles
    ORG_PERMISSION_MATRIX[area][action]    -> frozenset of org roles
    OWNERSHIP_RULES[entity_type][action]   -> states in which the record's
                                              owner may act regardless of role
    CONDITIONAL_ACTIONS[entity_type][action] -> (record attribute,
                                              {attribute value: matrix action})

The project ``admin`` role appears in every project-level cell, which is
what makes the organisation-administrator override (evaluated as
``admin``) a superset of every other project role.
"""

from tracker.models.auth import OrgRole
from tracker.models.project import ProjectRole

ADMIN = ProjectRole.ADMIN.value
SUPPLIER_PM = ProjectRole.SUPPLIER_PM.value
SUPPLIER_FINANCE = ProjectRole.SUPPLIER_FINANCE.value
CUSTOMER_PM = ProjectRole.CUSTOMER_PM.value
CUSTOMER_FINANCE = ProjectRole.CUSTOMER_FINANCE.value
CONTRIBUTOR = ProjectRole.CONTRIBUTOR.value
VIEWER = ProjectRole.VIEWER.value

# ── Role groups ──────────────────────────────────────────────────────────────
AUTHENTICATED = frozenset(r.value for r in ProjectRole)
MANAGERS = frozenset({ADMIN, SUPPLIER_PM, CUSTOMER_PM})
SUPPLIER_SIDE = frozenset({ADMIN, SUPPLIER_PM, SUPPLIER_FINANCE})
CUSTOMER_SIDE = frozenset({ADMIN, CUSTOMER_PM, CUSTOMER_FINANCE})
SUPPLIER_PMS = frozenset({ADMIN, SUPPLIER_PM})
CUSTOMER_PMS = frozenset({ADMIN, CUSTOMER_PM})
WORKERS = frozenset({ADMIN, SUPPLIER_PM, SUPPLIER_FINANCE, CUSTOMER_FINANCE, CONTRIBUTOR})
DELIVERY_TEAM = frozenset({ADMIN, SUPPLIER_PM, CONTRIBUTOR})
ADMIN_ONLY = frozenset({ADMIN})

ORG_ADMINS = frozenset({OrgRole.ORG_ADMIN.value})
ALL_ORG_ROLES = frozenset(r.value for r in OrgRole)


# ═════════════════════════════════════════════════════════════════════════════
# Project-level matrix
# ═════════════════════════════════════════════════════════════════════════════

PERMISSION_MATRIX = {
    "milestones": {
        "view": AUTHENTICATED,
        "create": SUPPLIER_SIDE,
        "edit": SUPPLIER_SIDE,
        "edit_billing": SUPPLIER_SIDE,
        "delete": ADMIN_ONLY,
        "purge": ADMIN_ONLY,
        "sign": SUPPLIER_PMS | CUSTOMER_PMS,
        "sign_as_supplier": SUPPLIER_PMS,
        "sign_as_customer": CUSTOMER_PMS,
    },
    "deliverables": {
        "view": AUTHENTICATED,
        "create": DELIVERY_TEAM,
        "edit": DELIVERY_TEAM,
        "start": DELIVERY_TEAM,
        "submit_for_review": DELIVERY_TEAM,
        "complete_review": CUSTOMER_SIDE,
        "return_for_work": CUSTOMER_SIDE,
        "delete": SUPPLIER_SIDE,
        "purge": ADMIN_ONLY,
        "sign": SUPPLIER_PMS | CUSTOMER_PMS,
        "sign_as_supplier": SUPPLIER_PMS,
        "sign_as_customer": CUSTOMER_PMS,
    },
    "variations": {
        "view": AUTHENTICATED,
        "create": SUPPLIER_SIDE,
        "edit": SUPPLIER_SIDE,
        "delete": SUPPLIER_SIDE,
        "purge": ADMIN_ONLY,
        "submit": SUPPLIER_SIDE,
        "sign": SUPPLIER_SIDE | CUSTOMER_SIDE,
        "sign_as_supplier": SUPPLIER_SIDE,
        "sign_as_customer": CUSTOMER_SIDE,
        "reject": MANAGERS,
        "apply": SUPPLIER_SIDE,
    },
    "certificates": {
        "view": MANAGERS,
        "create": MANAGERS,
        "delete": ADMIN_ONLY,
        "purge": ADMIN_ONLY,
        "sign": SUPPLIER_SIDE | CUSTOMER_SIDE,
        "sign_as_supplier": SUPPLIER_SIDE,
        "sign_as_customer": CUSTOMER_SIDE,
    },
    "timesheets": {
        "view": AUTHENTICATED,
        "create": WORKERS,
        # Role grants below act on anyone's entries; owners use OWNERSHIP_RULES
        "edit": SUPPLIER_SIDE,
        "submit": SUPPLIER_SIDE,
        "delete": SUPPLIER_SIDE,
        "purge": ADMIN_ONLY,
        "approve": CUSTOMER_SIDE,
        "reject": CUSTOMER_SIDE,
    },
    "expenses": {
        "view": AUTHENTICATED,
        "create": WORKERS,
        "edit": SUPPLIER_SIDE,
        "submit": SUPPLIER_SIDE,
        "delete": SUPPLIER_SIDE,
        "purge": ADMIN_ONLY,
        "validate_chargeable": CUSTOMER_SIDE,
        "validate_non_chargeable": SUPPLIER_SIDE,
        "reject": SUPPLIER_SIDE | CUSTOMER_SIDE,
    },
    "users": {
        "view": SUPPLIER_SIDE,
        "manage": ADMIN_ONLY,
    },
}

# Actions whose matrix cell depends on a record attribute.  Without a
# record, the action is allowed if any of the mapped cells allows it.
CONDITIONAL_ACTIONS = {
    "expenses": {
        "validate": (
            "chargeable_to_customer",
            {True: "validate_chargeable", False: "validate_non_chargeable"},
        ),
    },
}

# Owner of the record (Resource.user_id, else created_by_id) may perform
# these actions while the record is in one of the listed states, provided
# they hold an active project membership (any role).
OWNERSHIP_RULES = {
    "timesheets": {
        "edit": ("draft", "rejected"),
        "submit": ("draft", "rejected"),
        "delete": ("draft",),
    },
    "expenses": {
        "edit": ("draft", "rejected"),
        "submit": ("draft", "rejected"),
        "delete": ("draft",),
    },
}


# ═════════════════════════════════════════════════════════════════════════════
# Organisation-level matrix
# ═════════════════════════════════════════════════════════════════════════════

ORG_PERMISSION_MATRIX = {
    "organisation": {
        "view": ALL_ORG_ROLES,
        "edit": ORG_ADMINS,
    },
    "org_members": {
        "view": ALL_ORG_ROLES,
        "invite": ORG_ADMINS,
        "remove": ORG_ADMINS,
        "change_role": ORG_ADMINS,
    },
    "org_projects": {
        "view": ALL_ORG_ROLES,
        "create": ORG_ADMINS,
        "delete": ORG_ADMINS,
        "assign_members": ORG_ADMINS,
    },
}


def entity_types():
    return sorted(PERMISSION_MATRIX)


def actions_for(entity_type):
    """Every action name the engine accepts for *entity_type*."""
    actions = set(PERMISSION_MATRIX.get(entity_type, {}))
    actions.update(CONDITIONAL_ACTIONS.get(entity_type, {}))
    return actions
