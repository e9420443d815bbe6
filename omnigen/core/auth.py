"""Session token decoding.

The identity service issues an HS256 JWT in a cookie; this service only
verifies it. The user id is the ``sub`` claim.
"""

import uuid

import jwt
from starlette.requests import Request

from omnigen.core.config import settings


def session_user_id(request: Request) -> uuid.UUID | None:
    """Return the user id from the request's session cookie.

    None when the cookie is missing, the signature, expiry, audience, or
    issuer does not verify, or ``sub`` is not a UUID.
    """
    token = request.cookies.get(settings.auth_cookie_name)
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            settings.auth_secret.get_secret_value(),
            algorithms=["HS256"],
            audience=settings.auth_audience,
            issuer=settings.auth_issuer,
        )
        return uuid.UUID(payload["sub"])
    except (jwt.InvalidTokenError, KeyError, TypeError, ValueError):
        return None
