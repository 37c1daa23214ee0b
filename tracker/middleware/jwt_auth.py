"""
Identity Middleware — turns the request's credentials into ``g.identity``.

Priority order:
  1. Authorization: Bearer <jwt>   →  SessionIdentity(sub, org_id)
  2. X-User-Id / X-Organisation-Id headers, only when
     TRUST_IDENTITY_HEADERS is set (development, tests, or behind an
     authenticating gateway)

A token that fails verification still yields an identity, with
``session_valid=False``, so the access-control engine denies with
``deny_session_invalid`` rather than treating the caller as anonymous.
No credentials at all leaves ``g.identity`` as None.
"""

import logging

import jwt as pyjwt
from flask import current_app, g, request

from tracker.services.jwt_service import decode_access_token
from tracker.services.permission_service import invalidate_request_cache
from tracker.services.tenancy_resolver import SessionIdentity

logger = logging.getLogger(__name__)


def _int_or_none(value):
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _identity_from_token(token):
    try:
        payload = decode_access_token(token)
    except pyjwt.ExpiredSignatureError:
        logger.info("Expired access token")
        return _invalid_identity(token)
    except pyjwt.InvalidTokenError as exc:
        logger.info("Rejected access token: %s", exc)
        return _invalid_identity(token)

    user_id = _int_or_none(payload.get("sub"))
    if user_id is None:
        return _invalid_identity(token)
    return SessionIdentity(
        user_id=user_id,
        session_valid=True,
        organisation_id=_int_or_none(payload.get("org_id")),
    )


def _invalid_identity(token):
    # Unverified claims are used for logging/auditing only; the session is invalid
    try:
        claims = pyjwt.decode(token, options={"verify_signature": False})
    except pyjwt.InvalidTokenError:
        claims = {}
    return SessionIdentity(user_id=_int_or_none(claims.get("sub")), session_valid=False)


def _identity_from_headers():
    user_id = _int_or_none(request.headers.get("X-User-Id"))
    if user_id is None:
        return None
    return SessionIdentity(
        user_id=user_id,
        session_valid=True,
        organisation_id=_int_or_none(request.headers.get("X-Organisation-Id")),
    )


def init_identity_middleware(app):
    """Register the identity resolver as a before_request hook."""

    @app.before_request
    def _resolve_identity():
        g.identity = None
        g.organisation_id = None
        invalidate_request_cache()

        if not request.path.startswith("/api/v1/"):
            return

        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            g.identity = _identity_from_token(auth_header[7:])
        elif current_app.config.get("TRUST_IDENTITY_HEADERS"):
            g.identity = _identity_from_headers()

        if g.identity is not None:
            g.organisation_id = g.identity.organisation_id
