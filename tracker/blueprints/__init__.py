"""
Project Tracker — blueprint registry and shared view plumbing.
"""

import logging

from flask import request
from werkzeug.exceptions import HTTPException

from tracker.core.exceptions import TrackerError
from tracker.utils.errors import E, api_error, error_from_exception

logger = logging.getLogger(__name__)


def paginate_query(query, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit  — max items (default 200, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def register_error_handlers(bp):
    """Map the tracker exception taxonomy onto JSON responses for *bp*."""

    @bp.errorhandler(TrackerError)
    def _handle_tracker_error(error: TrackerError):
        if error.http_status >= 500:
            logger.warning("%s on %s: %s", type(error).__name__, request.endpoint, error)
        return error_from_exception(error)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
