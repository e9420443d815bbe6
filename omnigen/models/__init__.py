"""SQLAlchemy ORM models for Omnigen.

All models are exported from this module for convenient imports:
    from omnigen.models import User, Workspace, Generation, ...

Models are organized by domain:
- user.py: User (personal balance)
- workspace.py: Workspace, WorkspaceMember (shared pool and allocations)
- catalog.py: AIModel (read-only model catalog)
- generation.py: Generation (one unit per request and model)
- ledger.py: CreditReservation, LedgerEntry (append-only)
- pricing_setting.py: PricingSetting (margin and credit price rows)
"""

from omnigen.models.base import Base, CreatedAtMixin, UUIDPrimaryKeyMixin
from omnigen.models.catalog import AIModel
from omnigen.models.generation import Generation, GenerationStatus
from omnigen.models.ledger import CreditReservation, LedgerEntry
from omnigen.models.pricing_setting import PricingSetting
from omnigen.models.user import User
from omnigen.models.workspace import Workspace, WorkspaceMember

__all__ = [
    # Base classes
    "Base",
    "CreatedAtMixin",
    "UUIDPrimaryKeyMixin",
    # Accounts
    "User",
    "Workspace",
    "WorkspaceMember",
    # Catalog
    "AIModel",
    "PricingSetting",
    # Generation
    "Generation",
    "GenerationStatus",
    # Ledger
    "CreditReservation",
    "LedgerEntry",
]
