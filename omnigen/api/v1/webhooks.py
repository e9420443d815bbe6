"""Provider webhook receiver.

POST /{provider} always answers 200 ``{"received": true}``. Providers retry
on anything else, and a malformed or unknown payload will not get better
on retry. When WEBHOOK_SECRET is set, callbacks without the matching
``?token=`` are ignored.
"""

import hmac
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Query, Request

from omnigen.api.deps import Orchestrator
from omnigen.core.config import settings

router = APIRouter()

logger = structlog.get_logger()

_RECEIVED = {"received": True}


def _token_ok(token: str | None) -> bool:
    secret = settings.webhook_secret.get_secret_value()
    if not secret:
        return True
    return token is not None and hmac.compare_digest(token, secret)


@router.post("/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    orchestrator: Orchestrator,
    token: Annotated[str | None, Query(max_length=255)] = None,
) -> dict[str, Any]:
    """Apply a provider completion callback."""
    if not _token_ok(token):
        logger.warning("webhook_rejected", provider=provider, reason="bad_token")
        return _RECEIVED

    try:
        payload = await request.json()
    except ValueError:
        logger.debug("webhook_ignored", provider=provider, reason="invalid_json")
        return _RECEIVED

    applied = await orchestrator.handle_webhook(provider, payload)
    logger.debug("webhook_received", provider=provider, applied=applied)
    return _RECEIVED
