"""Standardised API error responses.

Usage
-----
    from tracker.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Milestone not found")
    return api_error(E.VALIDATION_REQUIRED, "action is required")
    return api_error(E.MISSING_PREREQUISITE, "Deliverables outstanding",
                     details={"unmet": [...]}, rule="MissingPrerequisiteDeliverables")
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention: ERR_ prefix, grouped by HTTP status family.
    """

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / state – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Business prerequisite – HTTP 422
    MISSING_PREREQUISITE = "ERR_MISSING_PREREQUISITE"

    # Server – HTTP 5xx
    TRANSIENT = "ERR_TRANSIENT"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.FORBIDDEN: 403,
    E.MISSING_PREREQUISITE: 422,
    E.TRANSIENT: 503,
    E.INTERNAL: 500,
}

# HTTP status of a TrackerError → error code family
_CODE_FOR_STATUS: dict[int, str] = {
    400: E.VALIDATION_INVALID,
    403: E.FORBIDDEN,
    404: E.NOT_FOUND,
    409: E.CONFLICT_STATE,
    422: E.MISSING_PREREQUISITE,
    503: E.TRANSIENT,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
    rule: str | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (unmet prerequisites, allowed slots, etc.).
    rule : str, optional
        Name of the violated rule, so the UI can explain the block.

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if rule:
        body["rule"] = rule
    if details:
        body["details"] = details

    return jsonify(body), http_status


def error_from_exception(exc):
    """Render a ``TrackerError`` with its own status, rule and flags."""
    body = exc.to_dict()
    body["code"] = _CODE_FOR_STATUS.get(exc.http_status, E.INTERNAL)
    return jsonify(body), exc.http_status
