"""
Membership Service — organisations, projects and who belongs to them.

Memberships are created by an administrator and deactivated on removal,
never deleted.  Every write drops the request-scoped membership memo so
the next permission check in the same request sees the change.

Authority:
    create_organisation         system administrator
    create_project              org_projects.create (org_admin)
    add / deactivate org member org_members.invite / org_members.remove
    project members             users.manage on the project, or
                                org_projects.assign_members
"""

import logging
import re
from datetime import datetime, timezone

from sqlalchemy import select

from tracker.core.exceptions import NotFoundError, PermissionDenied, ValidationError
from tracker.models import db
from tracker.models.audit import write_audit
from tracker.models.auth import (
    SUBSCRIPTION_TIERS,
    Organisation,
    OrganisationMembership,
    OrgRole,
    User,
)
from tracker.models.project import PROJECT_ROLES, Project, ProjectMembership
from tracker.services import tenancy_resolver
from tracker.services.permission_service import (
    can_perform,
    can_perform_org,
    check_org_permission,
    invalidate_request_cache,
)

logger = logging.getLogger(__name__)

_ORG_ROLES = {r.value for r in OrgRole}


def _slugify(name):
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def _get_user(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError(resource="User", resource_id=user_id)
    return user


def _get_project(project_id):
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    return project


def _check_project_admin(identity, project):
    """users.manage on the project, or org_projects.assign_members on its organisation."""
    if can_perform(identity, "manage", "users", project_id=project.id):
        return
    if project.organisation_id is not None and can_perform_org(
        identity, "assign_members", "org_projects", project.organisation_id
    ):
        return
    logger.info(
        "Project membership change denied",
        extra={"user_id": identity.user_id, "project_id": project.id},
    )
    raise PermissionDenied("manage", "users", rule="deny_by_default")


def _validate_role(role):
    if role not in PROJECT_ROLES:
        raise ValidationError(
            f"Invalid project role '{role}'",
            details={"valid_roles": sorted(PROJECT_ROLES)},
            rule="UnknownRole",
        )


def _commit():
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    invalidate_request_cache()


# ═════════════════════════════════════════════════════════════════════════════
# Organisations and projects
# ═════════════════════════════════════════════════════════════════════════════


def create_organisation(identity, *, name, slug=None, subscription_tier="free", admin_user_id=None):
    """Create an organisation, optionally seeding its first org_admin."""
    user = tenancy_resolver.load_user(identity.user_id) if identity.session_valid else None
    if user is None or not user.is_system_admin:
        raise PermissionDenied("create", "organisation", rule="deny_not_system_admin")

    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    if subscription_tier not in SUBSCRIPTION_TIERS:
        raise ValidationError(
            f"Invalid subscription_tier '{subscription_tier}'",
            details={"valid_tiers": sorted(SUBSCRIPTION_TIERS)},
        )
    slug = slug or _slugify(name)
    taken = db.session.execute(select(Organisation.id).where(Organisation.slug == slug)).first()
    if taken:
        raise ValidationError(f"Slug '{slug}' is already in use", details={"slug": slug}, rule="DuplicateSlug")

    org = Organisation(name=name, slug=slug, subscription_tier=subscription_tier)
    db.session.add(org)
    db.session.flush()
    if admin_user_id is not None:
        _get_user(admin_user_id)
        db.session.add(OrganisationMembership(
            organisation_id=org.id, user_id=admin_user_id, org_role=OrgRole.ORG_ADMIN.value,
        ))
    write_audit(
        entity_type="organisation",
        entity_id=org.id,
        action="membership.create_organisation",
        actor_user_id=identity.user_id,
        organisation_id=org.id,
        diff={"slug": slug, "admin_user_id": admin_user_id},
    )
    _commit()
    logger.info("Organisation created", extra={"organisation_id": org.id, "user_id": identity.user_id})
    return org


def create_project(identity, organisation_id, *, reference, name, description="", budget=0):
    check_org_permission(identity, "create", "org_projects", organisation_id)
    reference = (reference or "").strip()
    name = (name or "").strip()
    if not reference or not name:
        raise ValidationError(
            "reference and name are required",
            details={k: "required" for k, v in (("reference", reference), ("name", name)) if not v},
        )
    project = Project(
        organisation_id=organisation_id,
        reference=reference,
        name=name,
        description=description or "",
        budget=budget,
    )
    db.session.add(project)
    db.session.flush()
    write_audit(
        entity_type="project",
        entity_id=project.id,
        action="membership.create_project",
        actor_user_id=identity.user_id,
        project_id=project.id,
        organisation_id=organisation_id,
        diff={"reference": reference},
    )
    _commit()
    return project


# ═════════════════════════════════════════════════════════════════════════════
# Organisation memberships
# ═════════════════════════════════════════════════════════════════════════════


def add_org_member(identity, organisation_id, user_id, *, org_role=OrgRole.ORG_MEMBER.value):
    """Add (or reactivate) *user_id* in the organisation."""
    check_org_permission(identity, "invite", "org_members", organisation_id)
    if org_role not in _ORG_ROLES:
        raise ValidationError(
            f"Invalid org role '{org_role}'", details={"valid_roles": sorted(_ORG_ROLES)}, rule="UnknownRole",
        )
    _get_user(user_id)

    membership = db.session.execute(
        select(OrganisationMembership).where(
            OrganisationMembership.organisation_id == organisation_id,
            OrganisationMembership.user_id == user_id,
        )
    ).scalar_one_or_none()
    if membership is None:
        membership = OrganisationMembership(organisation_id=organisation_id, user_id=user_id)
        db.session.add(membership)
    else:
        membership.is_active = True
        membership.deactivated_at = None
        membership.joined_at = datetime.now(timezone.utc)
    membership.org_role = org_role

    write_audit(
        entity_type="org_members",
        entity_id=user_id,
        action="membership.add_org_member",
        actor_user_id=identity.user_id,
        organisation_id=organisation_id,
        diff={"org_role": org_role},
    )
    _commit()
    return membership


def deactivate_org_member(identity, organisation_id, user_id):
    check_org_permission(identity, "remove", "org_members", organisation_id)
    membership = db.session.execute(
        select(OrganisationMembership).where(
            OrganisationMembership.organisation_id == organisation_id,
            OrganisationMembership.user_id == user_id,
        )
    ).scalar_one_or_none()
    if membership is None:
        raise NotFoundError(resource="OrganisationMembership", resource_id=user_id)
    if membership.is_active:
        membership.deactivate()
        write_audit(
            entity_type="org_members",
            entity_id=user_id,
            action="membership.deactivate_org_member",
            actor_user_id=identity.user_id,
            organisation_id=organisation_id,
        )
        _commit()
        logger.info(
            "Organisation membership deactivated",
            extra={"organisation_id": organisation_id, "user_id": identity.user_id},
        )
    return membership


# ═════════════════════════════════════════════════════════════════════════════
# Project memberships
# ═════════════════════════════════════════════════════════════════════════════


def _project_membership(project_id, user_id):
    return db.session.execute(
        select(ProjectMembership).where(
            ProjectMembership.project_id == project_id,
            ProjectMembership.user_id == user_id,
        )
    ).scalar_one_or_none()


def add_project_member(identity, project_id, user_id, *, role):
    """Add (or reactivate) *user_id* on the project with *role*."""
    project = _get_project(project_id)
    _check_project_admin(identity, project)
    _validate_role(role)
    _get_user(user_id)

    membership = _project_membership(project.id, user_id)
    if membership is None:
        membership = ProjectMembership(project_id=project.id, user_id=user_id)
        db.session.add(membership)
    membership.role = role
    membership.is_active = True
    membership.deactivated_at = None

    write_audit(
        entity_type="users",
        entity_id=user_id,
        action="membership.add_project_member",
        actor_user_id=identity.user_id,
        project_id=project.id,
        organisation_id=project.organisation_id,
        diff={"role": role},
    )
    _commit()
    return membership


def change_project_role(identity, project_id, user_id, role):
    project = _get_project(project_id)
    _check_project_admin(identity, project)
    _validate_role(role)
    membership = _project_membership(project.id, user_id)
    if membership is None or not membership.is_active:
        raise NotFoundError(resource="ProjectMembership", resource_id=user_id)

    old_role = membership.role
    membership.role = role
    write_audit(
        entity_type="users",
        entity_id=user_id,
        action="membership.change_project_role",
        actor_user_id=identity.user_id,
        project_id=project.id,
        organisation_id=project.organisation_id,
        diff={"role": {"old": old_role, "new": role}},
    )
    _commit()
    logger.info(
        "Project role changed %s→%s", old_role, role,
        extra={"project_id": project.id, "user_id": identity.user_id},
    )
    return membership


def deactivate_project_member(identity, project_id, user_id):
    project = _get_project(project_id)
    _check_project_admin(identity, project)
    membership = _project_membership(project.id, user_id)
    if membership is None:
        raise NotFoundError(resource="ProjectMembership", resource_id=user_id)
    if membership.is_active:
        membership.deactivate()
        write_audit(
            entity_type="users",
            entity_id=user_id,
            action="membership.deactivate_project_member",
            actor_user_id=identity.user_id,
            project_id=project.id,
            organisation_id=project.organisation_id,
        )
        _commit()
    return membership
