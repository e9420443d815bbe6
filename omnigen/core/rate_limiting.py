"""Per-user rate limiting with slowapi.

Applied to the endpoints that start provider work (POST /generations and
POST /chat/completions). Requests are keyed by the verified session user;
requests without one share a bucket per client IP.

Usage in routers:
    from omnigen.core.rate_limiting import limiter

    @router.post("")
    @limiter.limit(settings.rate_limit_generation)
    async def create_generation(request: Request, ...):
        ...
"""

from fastapi import Request, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.responses import JSONResponse

from omnigen.core.auth import session_user_id
from omnigen.core.config import settings
from omnigen.core.responses import ErrorDetail, ErrorResponse

_DEFAULT_RETRY_AFTER = "60"


def rate_limit_key(request: Request) -> str:
    """Bucket key: ``user:{id}``, ``local:{ip}``, or ``anon:{ip}``."""
    if not settings.auth_enabled:
        return f"local:{get_remote_address(request)}"
    user_id = session_user_id(request)
    if user_id is not None:
        return f"user:{user_id}"
    return f"anon:{get_remote_address(request)}"


# In-memory storage: limits are per process.
limiter = Limiter(key_func=rate_limit_key, enabled=settings.rate_limit_enabled)


def _retry_after(exc: RateLimitExceeded) -> str:
    limit = getattr(exc, "limit", None)
    item = getattr(limit, "limit", None)
    if item is not None:
        return str(item.get_expiry())
    return _DEFAULT_RETRY_AFTER


def rate_limit_exceeded_handler(_request: Request, exc: RateLimitExceeded) -> Response:
    """429 in the standard error envelope with a Retry-After header."""
    return JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="RATE_LIMITED",
                message=f"Rate limit exceeded: {exc.detail}",
            )
        ).model_dump(),
        headers={"Retry-After": _retry_after(exc)},
    )
