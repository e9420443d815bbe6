"""Credit source resolution.

Decides which balance a request is billed against:

- no workspace, or the user's default workspace -> personal balance
- shared-mode workspace                         -> workspace pool
- individual-mode workspace                     -> the member's allocation
"""

import uuid
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from omnigen.core.errors import NotFoundError
from omnigen.models.workspace import CREDIT_MODE_INDIVIDUAL
from omnigen.repositories.ledger_repository import (
    SOURCE_ALLOCATED,
    SOURCE_PERSONAL,
    SOURCE_WORKSPACE,
)
from omnigen.repositories.user_repository import WorkspaceRepository


@dataclass(frozen=True)
class CreditSource:
    """Identity of a balance.

    Attributes:
        kind: personal, workspace, or allocated.
        user_id: Billed user (always set).
        workspace_id: Billed workspace (None for personal).
    """

    kind: str
    user_id: uuid.UUID
    workspace_id: uuid.UUID | None = None

    @property
    def lock_key(self) -> tuple[str, uuid.UUID | None, uuid.UUID | None]:
        """Key identifying the balance row; two sources sharing a row share a key."""
        if self.kind == SOURCE_PERSONAL:
            return (self.kind, self.user_id, None)
        if self.kind == SOURCE_WORKSPACE:
            return (self.kind, None, self.workspace_id)
        return (self.kind, self.user_id, self.workspace_id)

    @classmethod
    def personal(cls, user_id: uuid.UUID) -> "CreditSource":
        return cls(kind=SOURCE_PERSONAL, user_id=user_id)


async def resolve_credit_source(
    db: AsyncSession,
    user_id: uuid.UUID,
    workspace_id: uuid.UUID | None,
) -> CreditSource:
    """Resolve the balance a user's request in a workspace is billed against.

    Args:
        db: Async database session.
        user_id: Requesting user.
        workspace_id: Workspace of the request, or None for personal.

    Returns:
        The CreditSource to reserve against.

    Raises:
        NotFoundError: If the workspace does not exist or the user is not a
            member of it.
    """
    if workspace_id is None:
        return CreditSource.personal(user_id)

    workspace = await WorkspaceRepository.get_by_id(db, workspace_id)
    if workspace is None:
        raise NotFoundError("Workspace", str(workspace_id))

    if workspace.is_default:
        if workspace.owner_id != user_id:
            raise NotFoundError("Workspace", str(workspace_id))
        return CreditSource.personal(user_id)

    membership = await WorkspaceRepository.get_membership(
        db, workspace_id=workspace_id, user_id=user_id
    )
    if membership is None:
        raise NotFoundError("Workspace", str(workspace_id))

    if workspace.credit_mode == CREDIT_MODE_INDIVIDUAL:
        return CreditSource(
            kind=SOURCE_ALLOCATED, user_id=user_id, workspace_id=workspace_id
        )
    return CreditSource(kind=SOURCE_WORKSPACE, user_id=user_id, workspace_id=workspace_id)
