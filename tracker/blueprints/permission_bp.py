"""
Permission Blueprint — lets a UI ask before it renders a control.

Endpoints:
    GET /api/v1/permission-check?action=&entity_type=&record_id=&project_id=
        Returns: {allowed, decision: {allowed, rule, role, project_id}}
        With record_id, also ``available_actions`` for workflow entities.

    GET /api/v1/me/context[?organisation_id=]
        Returns: the caller's resolved organisation and project memberships.

    GET /api/v1/projects/<pid>/my-roles
        Returns: the project roles the caller acts with on <pid>.

A denial is an ordinary 200 with ``allowed: false``; only malformed input
(unknown entity type or action) is an error.
"""

import logging

from flask import Blueprint, jsonify, request

from tracker.blueprints import register_error_handlers
from tracker.core.exceptions import NotFoundError, ValidationError
from tracker.models import db
from tracker.models.permission_matrix import PERMISSION_MATRIX
from tracker.services import permission_service, tenancy_resolver, workflow_engine
from tracker.utils.helpers import int_arg, require_identity

logger = logging.getLogger(__name__)

permission_bp = Blueprint("permission", __name__, url_prefix="/api/v1")
register_error_handlers(permission_bp)


@permission_bp.route("/permission-check", methods=["GET"])
def permission_check():
    identity = require_identity()
    action = (request.args.get("action") or "").strip()
    entity_type = (request.args.get("entity_type") or "").strip()
    if not action or not entity_type:
        raise ValidationError(
            "action and entity_type are required",
            details={k: "required" for k, v in (("action", action), ("entity_type", entity_type)) if not v},
        )
    record_id = int_arg("record_id")
    project_id = int_arg("project_id")

    record = None
    if record_id is not None:
        if entity_type in PERMISSION_MATRIX and entity_type not in workflow_engine.ENTITY_MODELS:
            raise ValidationError(
                f"'{entity_type}' permissions are not record-scoped; use project_id instead of record_id",
                details={"record_scoped_entity_types": sorted(workflow_engine.ENTITY_MODELS)},
                rule="NotRecordScoped",
            )
        model = workflow_engine.get_model(entity_type)
        record = db.session.get(model, record_id)
        if record is None or record.is_deleted:
            raise NotFoundError(resource=entity_type, resource_id=record_id)

    decision = permission_service.evaluate_permission(
        identity, action, entity_type, record, project_id=project_id,
    )
    body = {"allowed": decision["allowed"], "decision": decision}
    if record is not None and entity_type in workflow_engine.WORKFLOWS:
        body["state"] = workflow_engine.get_definition(entity_type).state_of(record)
        body["available_actions"] = workflow_engine.available_actions(entity_type, record, identity)
    return jsonify(body), 200


@permission_bp.route("/me/context", methods=["GET"])
def my_context():
    identity = require_identity()
    ctx = tenancy_resolver.resolve_context(identity, organisation_id=int_arg("organisation_id"))
    return jsonify(ctx.to_dict()), 200


@permission_bp.route("/projects/<int:project_id>/my-roles", methods=["GET"])
def my_project_roles(project_id: int):
    identity = require_identity()
    roles = permission_service.effective_project_roles(identity, project_id)
    return jsonify({"project_id": project_id, "roles": sorted(roles)}), 200
