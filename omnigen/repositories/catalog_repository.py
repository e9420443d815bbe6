"""Repository for the read-only model catalog and pricing settings rows."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from omnigen.models.catalog import AIModel
from omnigen.models.pricing_setting import PricingSetting


class CatalogRepository:
    """Stateless repository for AIModel and PricingSetting reads.

    All methods are static; there is no instance state. Pass an AsyncSession
    for every call so the caller controls transaction boundaries.
    """

    @staticmethod
    async def get_model(db: AsyncSession, model_id: str) -> AIModel | None:
        return await db.get(AIModel, model_id)

    @staticmethod
    async def get_models(
        db: AsyncSession, model_ids: list[str]
    ) -> dict[str, AIModel]:
        """Fetch several models at once.

        Args:
            db: Async database session.
            model_ids: Catalog slugs to fetch.

        Returns:
            Mapping of slug to model. Unknown slugs are absent.
        """
        if not model_ids:
            return {}
        stmt = select(AIModel).where(AIModel.id.in_(model_ids))
        result = await db.execute(stmt)
        return {model.id: model for model in result.scalars().all()}

    @staticmethod
    async def list_enabled(
        db: AsyncSession,
        *,
        generation_type: str | None = None,
    ) -> list[AIModel]:
        """List enabled models, optionally filtered by type, ordered by name."""
        conditions = [AIModel.enabled.is_(True)]
        if generation_type is not None:
            conditions.append(AIModel.type == generation_type)
        stmt = select(AIModel).where(*conditions).order_by(AIModel.name)
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def get_pricing_settings(db: AsyncSession) -> dict[str, str]:
        """Read all pricing settings rows as a key/value mapping."""
        result = await db.execute(select(PricingSetting.key, PricingSetting.value))
        return {key: value for key, value in result.all()}
