"""
Workflow Blueprint — state transitions, certificates, baselines, variations.

Endpoints:
    POST /api/v1/workflow/<entity_type>/<record_id>/actions/<action>
         Body: {"slot": "supplier|customer" (optional), "reason": "..."}
         Returns: {previous_state, new_state, signature_recorded, applied_side_effects}

    GET  /api/v1/workflow/<entity_type>/<record_id>
         Returns: the record, its state and the caller's available actions.

    POST /api/v1/milestones/<id>/certificate          → 201 certificate
    GET  /api/v1/milestones/<id>/baseline-history     → versions + current baseline

    POST /api/v1/projects/<pid>/variations            → 201 draft variation
    PUT  /api/v1/variations/<vid>/milestones/<mid>    → affected-milestone row

Layer contract:
    - Blueprint: parse input, resolve the caller, call the service, render.
    - NO db.session writes here and NO inline role checks; the services own both.
"""

import logging

from flask import Blueprint, jsonify

from tracker.blueprints import register_error_handlers
from tracker.core.exceptions import NotFoundError
from tracker.models import db
from tracker.models.workflow import Milestone
from tracker.services import baseline_service, variation_service, workflow_engine
from tracker.services.permission_service import check_permission
from tracker.utils.helpers import json_body, require_identity

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")
register_error_handlers(workflow_bp)


# ── Transitions ────────────────────────────────────────────────────────────────


@workflow_bp.route(
    "/workflow/<entity_type>/<int:record_id>/actions/<action>",
    methods=["POST"],
)
def perform_action(entity_type: str, record_id: int, action: str):
    identity = require_identity()
    data = json_body()
    result = workflow_engine.attempt_transition(
        entity_type,
        record_id,
        action,
        identity,
        slot=(data.get("slot") or None),
        reason=data.get("reason"),
    )
    return jsonify(result.to_dict()), 200


@workflow_bp.route("/workflow/<entity_type>/<int:record_id>", methods=["GET"])
def get_workflow_record(entity_type: str, record_id: int):
    identity = require_identity()
    definition = workflow_engine.get_definition(entity_type)
    record = db.session.get(definition.model, record_id)
    if record is None or record.is_deleted:
        raise NotFoundError(resource=entity_type, resource_id=record_id)
    check_permission(identity, "view", entity_type, record)
    return jsonify({
        "record": record.to_dict(),
        "state": definition.state_of(record),
        "available_actions": workflow_engine.available_actions(entity_type, record, identity),
    }), 200


# ── Milestones ─────────────────────────────────────────────────────────────────


def _live_milestone(milestone_id):
    milestone = db.session.get(Milestone, milestone_id)
    if milestone is None or milestone.is_deleted:
        raise NotFoundError(resource="Milestone", resource_id=milestone_id)
    return milestone


@workflow_bp.route("/milestones/<int:milestone_id>/certificate", methods=["POST"])
def request_certificate(milestone_id: int):
    identity = require_identity()
    certificate = workflow_engine.request_certificate(milestone_id, identity)
    return jsonify(certificate.to_dict()), 201


@workflow_bp.route("/milestones/<int:milestone_id>/baseline-history", methods=["GET"])
def baseline_history(milestone_id: int):
    identity = require_identity()
    milestone = _live_milestone(milestone_id)
    check_permission(identity, "view", "milestones", milestone)

    versions = baseline_service.baseline_history(milestone.id)
    current = baseline_service.current_baseline(milestone.id)
    return jsonify({
        "milestone_id": milestone.id,
        "milestone_ref": milestone.milestone_ref,
        "baseline_status": milestone.baseline_status,
        "versions": [v.to_dict() for v in versions],
        "current_baseline": current.to_dict() if current else None,
    }), 200


# ── Variations ─────────────────────────────────────────────────────────────────


@workflow_bp.route("/projects/<int:project_id>/variations", methods=["POST"])
def create_variation(project_id: int):
    identity = require_identity()
    data = json_body()
    variation = variation_service.create_variation(
        project_id,
        identity,
        title=data.get("title"),
        description=data.get("description", ""),
        variation_type=data.get("variation_type", "combined"),
    )
    return jsonify(variation.to_dict()), 201


@workflow_bp.route(
    "/variations/<int:variation_id>/milestones/<int:milestone_id>",
    methods=["PUT"],
)
def put_affected_milestone(variation_id: int, milestone_id: int):
    identity = require_identity()
    data = json_body()
    vm = variation_service.add_affected_milestone(
        variation_id,
        milestone_id,
        identity,
        cost_delta=data.get("cost_delta"),
        start_delta_days=data.get("start_delta_days"),
        end_delta_days=data.get("end_delta_days"),
        rationale=data.get("rationale", ""),
    )
    return jsonify(vm.to_dict()), 200
