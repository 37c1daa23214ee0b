"""
Lifecycle Blueprint — soft delete, restore, purge and the deleted-items view.

Endpoints:
    POST /api/v1/lifecycle/<entity_type>/<record_id>/soft-delete
    POST /api/v1/lifecycle/<entity_type>/<record_id>/restore
    POST /api/v1/lifecycle/<entity_type>/<record_id>/purge
    GET  /api/v1/lifecycle/<entity_type>/deleted?project_id=
    GET  /api/v1/projects/<pid>/records/<entity_type>       (live records only)

Listings are paginated with ``limit`` / ``offset``.
"""

import logging

from flask import Blueprint, jsonify

from tracker.blueprints import paginate_query, register_error_handlers
from tracker.services import soft_delete_service
from tracker.utils.helpers import int_arg, require_identity

logger = logging.getLogger(__name__)

lifecycle_bp = Blueprint("lifecycle", __name__, url_prefix="/api/v1")
register_error_handlers(lifecycle_bp)


@lifecycle_bp.route("/lifecycle/<entity_type>/<int:record_id>/soft-delete", methods=["POST"])
def soft_delete(entity_type: str, record_id: int):
    identity = require_identity()
    result = soft_delete_service.soft_delete(entity_type, record_id, identity)
    return jsonify(result), 200


@lifecycle_bp.route("/lifecycle/<entity_type>/<int:record_id>/restore", methods=["POST"])
def restore(entity_type: str, record_id: int):
    identity = require_identity()
    record = soft_delete_service.restore(entity_type, record_id, identity)
    return jsonify(record.to_dict()), 200


@lifecycle_bp.route("/lifecycle/<entity_type>/<int:record_id>/purge", methods=["POST"])
def purge(entity_type: str, record_id: int):
    identity = require_identity()
    result = soft_delete_service.purge(entity_type, record_id, identity)
    return jsonify(result), 200


@lifecycle_bp.route("/lifecycle/<entity_type>/deleted", methods=["GET"])
def list_deleted(entity_type: str):
    identity = require_identity()
    project_id = int_arg("project_id", required=True)
    query = soft_delete_service.deleted_query(entity_type, project_id, identity)
    items, total = paginate_query(query)
    return jsonify({
        "items": [{**r.to_dict(), **r.tombstone_dict()} for r in items],
        "total": total,
    }), 200


@lifecycle_bp.route("/projects/<int:project_id>/records/<entity_type>", methods=["GET"])
def list_active(project_id: int, entity_type: str):
    identity = require_identity()
    query = soft_delete_service.active_query(entity_type, project_id, identity)
    items, total = paginate_query(query)
    return jsonify({"items": [r.to_dict() for r in items], "total": total}), 200
