"""
Tenancy Resolver — who the caller is, and where they belong.

Turns a verified ``SessionIdentity`` into the caller's active
organisation membership and project memberships.  Every call reads the
store; nothing is cached here, so a membership deactivated by another
request is visible on the very next call.

Usage:
    from tracker.services.tenancy_resolver import SessionIdentity, resolve_context

    ctx = resolve_context(SessionIdentity(user_id=7))
    ctx.organisation_membership.org_role     # "org_admin"
    ctx.project_role(project_id=3)           # "supplier_pm" | None
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy import or_, select

from tracker.core.exceptions import NoActiveMembership, PermissionDenied
from tracker.models import db
from tracker.models.auth import Organisation, OrganisationMembership, User
from tracker.models.project import Project, ProjectMembership

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionIdentity:
    """Verified identity handed over by the session provider.

    ``organisation_id`` is the organisation the caller has selected, if any.
    """

    user_id: int
    session_valid: bool = True
    organisation_id: int | None = None


@dataclass
class TenancyContext:
    user: User
    organisation_membership: OrganisationMembership
    project_memberships: list = field(default_factory=list)

    @property
    def organisation_id(self):
        return self.organisation_membership.organisation_id

    @property
    def is_org_admin(self):
        return self.organisation_membership.is_org_admin

    def project_role(self, project_id):
        for pm in self.project_memberships:
            if pm.project_id == project_id:
                return pm.role
        return None

    def to_dict(self):
        return {
            "user": self.user.to_dict(),
            "organisation_membership": self.organisation_membership.to_dict(),
            "project_memberships": [pm.to_dict() for pm in self.project_memberships],
        }


# ── Single lookups (used by the access-control engine) ──────────────────────


def load_user(user_id):
    """Return the active User for *user_id*, or None."""
    if user_id is None:
        return None
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        return None
    return user


def active_org_membership(user_id, organisation_id):
    """Active membership of *user_id* in an active organisation, or None."""
    stmt = (
        select(OrganisationMembership)
        .join(Organisation, Organisation.id == OrganisationMembership.organisation_id)
        .where(
            OrganisationMembership.user_id == user_id,
            OrganisationMembership.organisation_id == organisation_id,
            OrganisationMembership.is_active.is_(True),
            Organisation.is_active.is_(True),
        )
    )
    return db.session.execute(stmt).scalar_one_or_none()


def active_project_membership(user_id, project_id):
    stmt = select(ProjectMembership).where(
        ProjectMembership.user_id == user_id,
        ProjectMembership.project_id == project_id,
        ProjectMembership.is_active.is_(True),
    )
    return db.session.execute(stmt).scalar_one_or_none()


def all_active_memberships(user_id):
    """(org memberships, project memberships) across every active organisation.

    Project memberships in projects whose organisation membership is no
    longer active are left out.
    """
    org_memberships = db.session.execute(
        select(OrganisationMembership)
        .join(Organisation, Organisation.id == OrganisationMembership.organisation_id)
        .where(
            OrganisationMembership.user_id == user_id,
            OrganisationMembership.is_active.is_(True),
            Organisation.is_active.is_(True),
        )
        .order_by(OrganisationMembership.joined_at, OrganisationMembership.id)
    ).scalars().all()
    org_ids = [m.organisation_id for m in org_memberships]

    project_memberships = db.session.execute(
        select(ProjectMembership)
        .join(Project, Project.id == ProjectMembership.project_id)
        .where(
            ProjectMembership.user_id == user_id,
            ProjectMembership.is_active.is_(True),
            or_(Project.organisation_id.in_(org_ids), Project.organisation_id.is_(None)),
        )
        .order_by(ProjectMembership.project_id)
    ).scalars().all()
    return list(org_memberships), list(project_memberships)


# ── Context resolution ──────────────────────────────────────────────────────


def resolve_context(identity, organisation_id=None):
    """Resolve *identity* to its active organisation and project memberships.

    Organisation selection order: explicit *organisation_id*, then the
    identity's selected organisation, then the user's earliest active
    membership.

    Raises:
        PermissionDenied: session invalid, or user unknown / inactive.
        NoActiveMembership: no active membership in an active organisation.
    """
    if not identity.session_valid:
        raise PermissionDenied("resolve", "session", rule="SessionInvalid",
                               message="Session is no longer valid")
    user = load_user(identity.user_id)
    if user is None:
        raise PermissionDenied("resolve", "session", rule="SessionInvalid",
                               message=f"User {identity.user_id} is unknown or inactive")

    target_org = organisation_id if organisation_id is not None else identity.organisation_id
    if target_org is not None:
        org_membership = active_org_membership(user.id, target_org)
    else:
        org_memberships, _ = all_active_memberships(user.id)
        org_membership = org_memberships[0] if org_memberships else None

    if org_membership is None:
        logger.info(
            "No active organisation membership",
            extra={"user_id": user.id, "organisation_id": target_org},
        )
        raise NoActiveMembership(user.id, target_org)

    project_memberships = db.session.execute(
        select(ProjectMembership)
        .join(Project, Project.id == ProjectMembership.project_id)
        .where(
            ProjectMembership.user_id == user.id,
            ProjectMembership.is_active.is_(True),
            or_(
                Project.organisation_id == org_membership.organisation_id,
                Project.organisation_id.is_(None),
            ),
        )
        .order_by(ProjectMembership.project_id)
    ).scalars().all()

    return TenancyContext(
        user=user,
        organisation_membership=org_membership,
        project_memberships=list(project_memberships),
    )
