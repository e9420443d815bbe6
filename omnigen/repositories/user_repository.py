"""Repository for User and Workspace lookups.

Provides database access for the users, workspaces, and workspace_members
tables. Balances are never written here; see LedgerRepository.
"""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from omnigen.models.user import User
from omnigen.models.workspace import (
    CREDIT_MODE_SHARED,
    ROLE_MEMBER,
    Workspace,
    WorkspaceMember,
)


class UserRepository:
    """Stateless repository for User table operations.

    All methods are static; there is no instance state. Pass an AsyncSession
    for every call so the caller controls transaction boundaries.
    """

    @staticmethod
    async def get_by_id(db: AsyncSession, user_id: uuid.UUID) -> User | None:
        """Fetch a user by primary key.

        Args:
            db: Async database session.
            user_id: UUID primary key.

        Returns:
            User if found, None otherwise.
        """
        return await db.get(User, user_id)

    @staticmethod
    async def get_by_email(db: AsyncSession, email: str) -> User | None:
        """Fetch a user by email address (case-insensitive)."""
        stmt = select(User).where(User.email == email.lower())
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def create(
        db: AsyncSession,
        *,
        email: str,
        name: str | None = None,
        user_id: uuid.UUID | None = None,
    ) -> User:
        """Create a user with a zero balance.

        Email is normalized to lowercase before storage. Opening credits are
        granted through the ledger so they show up in the user's history.

        Args:
            db: Async database session.
            email: User's email address.
            name: Display name.
            user_id: Identity-service id, generated when omitted.

        Returns:
            Created User.
        """
        user = User(email=email.lower(), name=name)
        if user_id is not None:
            user.id = user_id
        db.add(user)
        await db.flush()
        await db.refresh(user)
        return user


class WorkspaceRepository:
    """Stateless repository for Workspace and WorkspaceMember operations."""

    @staticmethod
    async def get_by_id(
        db: AsyncSession, workspace_id: uuid.UUID
    ) -> Workspace | None:
        return await db.get(Workspace, workspace_id)

    @staticmethod
    async def get_default_for_user(
        db: AsyncSession, user_id: uuid.UUID
    ) -> Workspace | None:
        """Fetch the user's personal (default) workspace."""
        stmt = select(Workspace).where(
            Workspace.owner_id == user_id,
            Workspace.is_default.is_(True),
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_membership(
        db: AsyncSession,
        *,
        workspace_id: uuid.UUID,
        user_id: uuid.UUID,
    ) -> WorkspaceMember | None:
        """Fetch the membership row for (workspace, user).

        Args:
            db: Async database session.
            workspace_id: Workspace to look in.
            user_id: Member to look for.

        Returns:
            WorkspaceMember if the user belongs to the workspace, None otherwise.
        """
        stmt = select(WorkspaceMember).where(
            WorkspaceMember.workspace_id == workspace_id,
            WorkspaceMember.user_id == user_id,
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def create(
        db: AsyncSession,
        *,
        owner_id: uuid.UUID,
        name: str,
        is_default: bool = False,
        credit_mode: str = CREDIT_MODE_SHARED,
    ) -> Workspace:
        workspace = Workspace(
            owner_id=owner_id,
            name=name,
            is_default=is_default,
            credit_mode=credit_mode,
        )
        db.add(workspace)
        await db.flush()
        await db.refresh(workspace)
        return workspace

    @staticmethod
    async def add_member(
        db: AsyncSession,
        *,
        workspace_id: uuid.UUID,
        user_id: uuid.UUID,
        role: str = ROLE_MEMBER,
    ) -> WorkspaceMember:
        """Add a user to a workspace with a zero allocation."""
        member = WorkspaceMember(
            workspace_id=workspace_id,
            user_id=user_id,
            role=role,
        )
        db.add(member)
        await db.flush()
        await db.refresh(member)
        return member
