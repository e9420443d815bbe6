"""Account provisioning.

A user and their default workspace are created together, in one
transaction, along with the free-credit grant. There is no state in which
a user exists without a default workspace.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from omnigen.core.errors import InvalidStateError
from omnigen.models.user import User
from omnigen.models.workspace import ROLE_OWNER, Workspace
from omnigen.repositories.user_repository import UserRepository, WorkspaceRepository
from omnigen.services.credit_ledger import CreditLedger
from omnigen.services.credit_source import CreditSource
from omnigen.services.pricing_settings import PricingSettingsProvider

logger = logging.getLogger(__name__)

DEFAULT_WORKSPACE_NAME = "Personal"


@dataclass
class ProvisionedAccount:
    """Result of provisioning: the user, their default workspace, and balance."""

    user: User
    workspace: Workspace
    balance: Decimal


class AccountService:
    """Creates users with their default workspace and signup credits.

    Args:
        ledger: Credit ledger used for the signup grant.
        pricing_settings: Source of the ``freeCredits`` setting.
    """

    def __init__(
        self,
        ledger: CreditLedger,
        pricing_settings: PricingSettingsProvider,
    ) -> None:
        self._ledger = ledger
        self._pricing_settings = pricing_settings

    async def provision_user(
        self,
        db: AsyncSession,
        *,
        email: str,
        name: str | None = None,
        user_id: uuid.UUID | None = None,
    ) -> ProvisionedAccount:
        """Create a user, their default workspace, and grant free credits.

        Runs in the caller's transaction; the caller commits.

        Args:
            db: Async database session.
            email: User email (unique).
            name: Display name.
            user_id: Identity-service id, generated when omitted.

        Returns:
            ProvisionedAccount with the new user, workspace, and balance.

        Raises:
            InvalidStateError: If a user with this email already exists.
        """
        if await UserRepository.get_by_email(db, email) is not None:
            raise InvalidStateError("A user with this email already exists")

        user = await UserRepository.create(db, email=email, name=name, user_id=user_id)
        workspace = await WorkspaceRepository.create(
            db,
            owner_id=user.id,
            name=DEFAULT_WORKSPACE_NAME,
            is_default=True,
        )
        await WorkspaceRepository.add_member(
            db, workspace_id=workspace.id, user_id=user.id, role=ROLE_OWNER
        )

        settings = await self._pricing_settings.get()
        balance = Decimal("0")
        if settings.free_credits > 0:
            balance = await self._ledger.grant(
                db,
                CreditSource.personal(user.id),
                settings.free_credits,
                "Signup credits",
            )

        logger.info(
            "Provisioned user %s with default workspace %s (%s credits)",
            user.id,
            workspace.id,
            balance,
        )
        return ProvisionedAccount(user=user, workspace=workspace, balance=balance)
