"""Pricing settings key/value model.

Rows are written by the administrative collaborator and read into an
immutable snapshot by ``PricingSettingsProvider``.
"""

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from omnigen.models.base import Base, utcnow


class PricingSetting(Base):
    """A single pricing setting.

    Known keys: profitMargin, profitMarginImage, profitMarginVideo,
    profitMarginChat, creditPrice, freeCredits.
    """

    __tablename__ = "pricing_settings"

    key: Mapped[str] = mapped_column(
        String(100),
        primary_key=True,
    )
    value: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
