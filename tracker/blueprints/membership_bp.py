"""
Membership Blueprint — organisation / project administration.

Endpoints:
    POST   /api/v1/organisations                              system admin
    POST   /api/v1/organisations/<oid>/projects               org_admin
    POST   /api/v1/organisations/<oid>/members                org_admin
    DELETE /api/v1/organisations/<oid>/members/<uid>          org_admin (deactivates)
    POST   /api/v1/projects/<pid>/members                     project admin / org_admin
    PATCH  /api/v1/projects/<pid>/members/<uid>               change role
    DELETE /api/v1/projects/<pid>/members/<uid>               deactivates
"""

import logging

from flask import Blueprint, jsonify

from tracker.blueprints import register_error_handlers
from tracker.core.exceptions import ValidationError
from tracker.services import membership_service
from tracker.utils.helpers import json_body, require_identity

logger = logging.getLogger(__name__)

membership_bp = Blueprint("membership", __name__, url_prefix="/api/v1")
register_error_handlers(membership_bp)


def _required(data, *fields):
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(
            f"Missing required field(s): {', '.join(missing)}",
            details={f: "required" for f in missing},
        )


@membership_bp.route("/organisations", methods=["POST"])
def create_organisation():
    identity = require_identity()
    data = json_body()
    _required(data, "name")
    org = membership_service.create_organisation(
        identity,
        name=data["name"],
        slug=data.get("slug"),
        subscription_tier=data.get("subscription_tier", "free"),
        admin_user_id=data.get("admin_user_id"),
    )
    return jsonify(org.to_dict()), 201


@membership_bp.route("/organisations/<int:organisation_id>/projects", methods=["POST"])
def create_project(organisation_id: int):
    identity = require_identity()
    data = json_body()
    _required(data, "reference", "name")
    project = membership_service.create_project(
        identity,
        organisation_id,
        reference=data["reference"],
        name=data["name"],
        description=data.get("description", ""),
        budget=data.get("budget", 0),
    )
    return jsonify(project.to_dict()), 201


@membership_bp.route("/organisations/<int:organisation_id>/members", methods=["POST"])
def add_org_member(organisation_id: int):
    identity = require_identity()
    data = json_body()
    _required(data, "user_id")
    membership = membership_service.add_org_member(
        identity, organisation_id, data["user_id"],
        org_role=data.get("org_role", "org_member"),
    )
    return jsonify(membership.to_dict()), 201


@membership_bp.route("/organisations/<int:organisation_id>/members/<int:user_id>", methods=["DELETE"])
def deactivate_org_member(organisation_id: int, user_id: int):
    identity = require_identity()
    membership = membership_service.deactivate_org_member(identity, organisation_id, user_id)
    return jsonify(membership.to_dict()), 200


@membership_bp.route("/projects/<int:project_id>/members", methods=["POST"])
def add_project_member(project_id: int):
    identity = require_identity()
    data = json_body()
    _required(data, "user_id", "role")
    membership = membership_service.add_project_member(
        identity, project_id, data["user_id"], role=data["role"],
    )
    return jsonify(membership.to_dict()), 201


@membership_bp.route("/projects/<int:project_id>/members/<int:user_id>", methods=["PATCH"])
def change_project_role(project_id: int, user_id: int):
    identity = require_identity()
    data = json_body()
    _required(data, "role")
    membership = membership_service.change_project_role(identity, project_id, user_id, data["role"])
    return jsonify(membership.to_dict()), 200


@membership_bp.route("/projects/<int:project_id>/members/<int:user_id>", methods=["DELETE"])
def deactivate_project_member(project_id: int, user_id: int):
    identity = require_identity()
    membership = membership_service.deactivate_project_member(identity, project_id, user_id)
    return jsonify(membership.to_dict()), 200
