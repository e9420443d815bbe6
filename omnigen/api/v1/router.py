"""API v1 router aggregator.

All v1 endpoint routers are included here and mounted at /api/v1.
"""

from fastapi import APIRouter

from omnigen.api.v1 import chat, credits, generations, models, webhooks

router = APIRouter()

# =============================================================================
# Generation
# =============================================================================

router.include_router(generations.router, prefix="/generations", tags=["generations"])
router.include_router(chat.router, prefix="/chat", tags=["chat"])
router.include_router(models.router, prefix="/models", tags=["models"])

# =============================================================================
# Billing
# =============================================================================

router.include_router(credits.router, prefix="/credits", tags=["credits"])

# =============================================================================
# Provider callbacks (no user auth)
# =============================================================================

router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
