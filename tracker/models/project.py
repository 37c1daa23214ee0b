"""
Project domain models.

Models:
    - Project: unit of work owned by one organisation.
    - ProjectMembership: user ↔ project with a single closed-set role.
    - Resource: a person working on the project; links timesheets and
      expenses back to the user who owns them.
"""

import enum
from datetime import datetime, timezone

from tracker.models import db


class ProjectRole(str, enum.Enum):
    """Closed set of project-level roles."""

    ADMIN = "admin"
    SUPPLIER_PM = "supplier_pm"
    SUPPLIER_FINANCE = "supplier_finance"
    CUSTOMER_PM = "customer_pm"
    CUSTOMER_FINANCE = "customer_finance"
    CONTRIBUTOR = "contributor"
    VIEWER = "viewer"


PROJECT_ROLES = {r.value for r in ProjectRole}


class Project(db.Model):
    __tablename__ = "projects"
    __table_args__ = (
        db.UniqueConstraint("organisation_id", "reference", name="uq_project_org_reference"),
    )

    id = db.Column(db.Integer, primary_key=True)
    # Nullable for projects created before organisations existed
    organisation_id = db.Column(
        db.Integer, db.ForeignKey("organisations.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    reference = db.Column(db.String(50), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    budget = db.Column(db.Numeric(14, 2), default=0)
    settings = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    organisation = db.relationship("Organisation", back_populates="projects")
    memberships = db.relationship("ProjectMembership", back_populates="project", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "organisation_id": self.organisation_id,
            "reference": self.reference,
            "name": self.name,
            "description": self.description,
            "budget": str(self.budget) if self.budget is not None else None,
            "settings": self.settings or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.reference}>"


class ProjectMembership(db.Model):
    __tablename__ = "project_memberships"
    __table_args__ = (
        db.UniqueConstraint("project_id", "user_id", name="uq_project_membership"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    role = db.Column(db.String(30), nullable=False, default=ProjectRole.VIEWER.value)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    deactivated_at = db.Column(db.DateTime, nullable=True)

    project = db.relationship("Project", back_populates="memberships")
    user = db.relationship("User")

    def deactivate(self):
        self.is_active = False
        self.deactivated_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "role": self.role,
            "is_active": self.is_active,
            "deactivated_at": self.deactivated_at.isoformat() if self.deactivated_at else None,
        }

    def __repr__(self):
        return f"<ProjectMembership project={self.project_id} user={self.user_id} {self.role}>"


class Resource(db.Model):
    """A team member on a project; owner of timesheets and expenses."""

    __tablename__ = "resources"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200))
    role_title = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "role_title": self.role_title,
        }
