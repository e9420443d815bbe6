"""Shared dependencies for API endpoints.

Local mode uses DEFAULT_USER_ID; hosted mode validates the JWT session
cookie issued by the identity service.
"""

import uuid
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from omnigen.core.auth import session_user_id
from omnigen.core.config import settings
from omnigen.core.database import get_db
from omnigen.core.errors import UnauthorizedError
from omnigen.services.container import get_services
from omnigen.services.credit_ledger import CreditLedger
from omnigen.services.generation_orchestrator import GenerationOrchestrator


def get_current_user_id(request: Request) -> uuid.UUID:
    """Return the user the request acts for.

    Raises:
        UnauthorizedError: When auth is enabled and the session cookie does
            not verify, or auth is disabled and no DEFAULT_USER_ID is set.
    """
    if settings.auth_enabled:
        user_id = session_user_id(request)
    else:
        user_id = settings.default_user_id
    if user_id is None:
        # Same response for every failure (expired, bad signature, missing cookie)
        raise UnauthorizedError()
    return user_id


def get_orchestrator() -> GenerationOrchestrator:
    return get_services().orchestrator


def get_credit_ledger() -> CreditLedger:
    return get_services().ledger


CurrentUserId = Annotated[uuid.UUID, Depends(get_current_user_id)]
DbSession = Annotated[AsyncSession, Depends(get_db)]
Orchestrator = Annotated[GenerationOrchestrator, Depends(get_orchestrator)]
Ledger = Annotated[CreditLedger, Depends(get_credit_ledger)]
