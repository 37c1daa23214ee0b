"""
JWT Service — verification of tokens issued by the session provider.

Issuance, refresh and revocation belong to the session provider; this
service only verifies.  ``generate_access_token`` exists for local
development and the test-suite.

Token payload (access):
{
    "sub": <user_id>,
    "org_id": <selected organisation id, optional>,
    "type": "access",
    "iat": <issued_at>,
    "exp": <expires_at>,
    "jti": <unique_id>
}
"""

import uuid
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

DEFAULT_ACCESS_EXPIRES = 900       # 15 minutes
ALGORITHM = "HS256"


def _get_secret():
    return current_app.config.get("JWT_SECRET_KEY") or current_app.config["SECRET_KEY"]


def generate_access_token(user_id: int, organisation_id: int | None = None, expires_in: int | None = None) -> str:
    """Sign an access token for *user_id* (development / tests)."""
    now = datetime.now(timezone.utc)
    lifetime = expires_in if expires_in is not None else current_app.config.get(
        "JWT_ACCESS_EXPIRES", DEFAULT_ACCESS_EXPIRES,
    )
    payload = {
        "sub": str(user_id),
        "type": "access",
        "iat": now,
        "exp": now + timedelta(seconds=lifetime),
        "jti": str(uuid.uuid4()),
    }
    if organisation_id is not None:
        payload["org_id"] = organisation_id
    return jwt.encode(payload, _get_secret(), algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """
    Decode and verify an access token.

    Returns the payload dict on success.
    Raises jwt.exceptions on failure (ExpiredSignatureError, InvalidTokenError, etc.)
    """
    payload = jwt.decode(token, _get_secret(), algorithms=[ALGORITHM])
    if payload.get("type", "access") != "access":
        raise jwt.InvalidTokenError(f"Expected access token, got {payload.get('type')}")
    if "sub" not in payload:
        raise jwt.InvalidTokenError("Token has no subject")
    return payload
