"""
Auth Models — organisations, users, organisation memberships.

Memberships are deactivated, never deleted: ``is_active`` plus
``deactivated_at`` keep the history while removing the access.
Token issuance and password handling live outside this service; a
``User`` here is only the identity the access-control engine reasons about.
"""

import enum
from datetime import datetime, timezone

from tracker.models import db


class OrgRole(str, enum.Enum):
    """Closed set of organisation-level roles."""

    ORG_ADMIN = "org_admin"
    ORG_MEMBER = "org_member"


SUBSCRIPTION_TIERS = {"free", "starter", "professional", "enterprise"}


# ═══════════════════════════════════════════════════════════════
# 1. ORGANISATIONS
# ═══════════════════════════════════════════════════════════════
class Organisation(db.Model):
    __tablename__ = "organisations"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    subscription_tier = db.Column(db.String(30), nullable=False, default="free")
    settings = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    memberships = db.relationship(
        "OrganisationMembership", back_populates="organisation", lazy="dynamic",
    )
    projects = db.relationship("Project", back_populates="organisation", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "is_active": self.is_active,
            "subscription_tier": self.subscription_tier,
            "settings": self.settings or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Organisation {self.id}: {self.slug}>"


# ═══════════════════════════════════════════════════════════════
# 2. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), unique=True, nullable=False)
    full_name = db.Column(db.String(200))
    # Global elevated flag: overrides every membership check
    is_system_admin = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    org_memberships = db.relationship(
        "OrganisationMembership", back_populates="user", lazy="dynamic",
    )

    @property
    def display_name(self):
        return self.full_name or self.email

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "is_system_admin": self.is_system_admin,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"


# ═══════════════════════════════════════════════════════════════
# 3. ORGANISATION MEMBERSHIPS
# ═══════════════════════════════════════════════════════════════
class OrganisationMembership(db.Model):
    __tablename__ = "organisation_memberships"
    __table_args__ = (
        db.UniqueConstraint("organisation_id", "user_id", name="uq_org_membership"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organisation_id = db.Column(
        db.Integer, db.ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    org_role = db.Column(db.String(30), nullable=False, default=OrgRole.ORG_MEMBER.value)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    joined_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    deactivated_at = db.Column(db.DateTime, nullable=True)

    organisation = db.relationship("Organisation", back_populates="memberships")
    user = db.relationship("User", back_populates="org_memberships")

    @property
    def is_org_admin(self):
        return self.org_role == OrgRole.ORG_ADMIN.value

    def deactivate(self):
        self.is_active = False
        self.deactivated_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "organisation_id": self.organisation_id,
            "user_id": self.user_id,
            "org_role": self.org_role,
            "is_active": self.is_active,
            "joined_at": self.joined_at.isoformat() if self.joined_at else None,
            "deactivated_at": self.deactivated_at.isoformat() if self.deactivated_at else None,
        }

    def __repr__(self):
        return f"<OrganisationMembership org={self.organisation_id} user={self.user_id} {self.org_role}>"
