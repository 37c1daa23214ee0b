"""Model factories for tests.  Each helper commits, so ids are stable."""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from itertools import count

from tracker.models import db
from tracker.models.auth import Organisation, OrganisationMembership, User
from tracker.models.project import Project, ProjectMembership, Resource
from tracker.models.workflow import Deliverable, Expense, Milestone, Timesheet, Variation, VariationMilestone
from tracker.services.tenancy_resolver import SessionIdentity

_seq = count(1)


def _commit(obj):
    db.session.add(obj)
    db.session.commit()
    return obj


def make_user(name=None, *, is_system_admin=False, is_active=True):
    n = next(_seq)
    name = name or f"User {n}"
    return _commit(User(
        email=f"user{n}@example.com",
        full_name=name,
        is_system_admin=is_system_admin,
        is_active=is_active,
    ))


def make_org(name=None):
    n = next(_seq)
    return _commit(Organisation(name=name or f"Org {n}", slug=f"org-{n}"))


def make_project(org=None, *, reference=None, name="Delivery Project"):
    n = next(_seq)
    return _commit(Project(
        organisation_id=org.id if org is not None else None,
        reference=reference or f"PRJ-{n}",
        name=name,
    ))


def add_org_member(org, user, org_role="org_member"):
    return _commit(OrganisationMembership(organisation_id=org.id, user_id=user.id, org_role=org_role))


def add_project_member(project, user, role):
    return _commit(ProjectMembership(project_id=project.id, user_id=user.id, role=role))


def identity(user, *, session_valid=True, organisation_id=None):
    return SessionIdentity(user_id=user.id, session_valid=session_valid, organisation_id=organisation_id)


def headers(user, organisation_id=None):
    h = {"X-User-Id": str(user.id)}
    if organisation_id is not None:
        h["X-Organisation-Id"] = str(organisation_id)
    return h


@dataclass
class Team:
    org: Organisation
    project: Project
    supplier_pm: User
    supplier_finance: User
    customer_pm: User
    customer_finance: User
    contributor: User
    viewer: User
    org_admin: User
    outsider: User
    system_admin: User

    def id_for(self, name, **kwargs):
        return identity(getattr(self, name), **kwargs)


def make_team():
    org = make_org("Acme Delivery")
    project = make_project(org, reference="ACME-01")
    members = {}
    for role in ("supplier_pm", "supplier_finance", "customer_pm", "customer_finance", "contributor", "viewer"):
        user = make_user(role.replace("_", " ").title())
        add_org_member(org, user)
        add_project_member(project, user, role)
        members[role] = user

    org_admin = make_user("Org Admin")
    add_org_member(org, org_admin, org_role="org_admin")

    outsider = make_user("Outsider")
    add_org_member(make_org("Other Org"), outsider)

    return Team(
        org=org,
        project=project,
        org_admin=org_admin,
        outsider=outsider,
        system_admin=make_user("Sys Admin", is_system_admin=True),
        **members,
    )


# ── Workflow records ─────────────────────────────────────────────────────


def make_milestone(project, *, ref=None, billable="10000", start=date(2026, 1, 5), end=date(2026, 3, 27)):
    n = next(_seq)
    return _commit(Milestone(
        project_id=project.id,
        milestone_ref=ref or f"M{n:02d}",
        name=f"Milestone {n}",
        start_date=start,
        forecast_end_date=end,
        billable=Decimal(billable),
    ))


def make_deliverable(milestone, *, status="not_started"):
    n = next(_seq)
    return _commit(Deliverable(
        project_id=milestone.project_id,
        milestone_id=milestone.id,
        deliverable_ref=f"D{n:03d}",
        name=f"Deliverable {n}",
        status=status,
    ))


def make_variation(project, creator=None, *, status="draft", affects=()):
    """*affects*: iterable of (milestone, cost_delta, start_delta_days, end_delta_days)."""
    n = next(_seq)
    variation = Variation(
        project_id=project.id,
        variation_ref=f"VAR-{n:03d}",
        title=f"Variation {n}",
        status=status,
        created_by_id=creator.id if creator is not None else None,
    )
    db.session.add(variation)
    db.session.flush()
    for milestone, cost, start_days, end_days in affects:
        db.session.add(VariationMilestone(
            variation_id=variation.id,
            milestone_id=milestone.id,
            cost_delta=Decimal(str(cost)) if cost is not None else None,
            start_delta_days=start_days,
            end_delta_days=end_days,
        ))
    db.session.commit()
    return variation


def make_resource(project, user):
    return _commit(Resource(project_id=project.id, user_id=user.id, name=user.display_name, email=user.email))


def make_timesheet(project, owner, *, status="draft", hours="7.5"):
    resource = make_resource(project, owner)
    return _commit(Timesheet(
        project_id=project.id,
        resource_id=resource.id,
        created_by_id=owner.id,
        work_date=date(2026, 2, 2),
        hours=Decimal(hours),
        status=status,
    ))


def make_expense(project, owner, *, status="draft", chargeable=True, amount="120.00"):
    resource = make_resource(project, owner)
    return _commit(Expense(
        project_id=project.id,
        resource_id=resource.id,
        created_by_id=owner.id,
        expense_date=date(2026, 2, 3),
        category="travel",
        amount=Decimal(amount),
        chargeable_to_customer=chargeable,
        status=status,
    ))
