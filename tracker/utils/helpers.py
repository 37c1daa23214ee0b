"""Shared view helpers for the API blueprints.

require_identity:  caller identity from ``g`` or PermissionDenied
json_body:         request JSON as a dict, never None
int_arg:           optional integer query parameter, ValidationError on junk
"""

from flask import g, request

from tracker.core.exceptions import PermissionDenied, ValidationError


def require_identity():
    """Return ``g.identity`` or raise PermissionDenied(rule="deny_unauthenticated")."""
    identity = getattr(g, "identity", None)
    if identity is None:
        raise PermissionDenied(
            "access", "api", rule="deny_unauthenticated",
            message="Authentication required",
        )
    return identity


def json_body():
    """Request JSON object, or {} when there is no body.  Anything else is a 400."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(
            "Request body must be a JSON object",
            details={"body": type(data).__name__},
            rule="InvalidBody",
        )
    return data


def int_arg(name, *, required=False):
    raw = request.args.get(name)
    if raw in (None, ""):
        if required:
            raise ValidationError(f"{name} is required", details={name: "required"})
        return None
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be an integer", details={name: raw}) from exc
