"""
Gateway router - aggregates every endpoint.

Usage in main.py:
    from api.routes import router
    app.include_router(router)
"""

from fastapi import APIRouter

from api.routes import compat, generate, health, maintenance, models

router = APIRouter()

# Health and tool listing (no probes for /tools)
router.include_router(
    health.router,
    tags=["Health"],
)

# Generation
router.include_router(
    generate.router,
    tags=["Generation"],
)

# Model discovery
router.include_router(
    models.router,
    tags=["Models"],
)

# Self-update and cleanup
router.include_router(
    maintenance.router,
    tags=["Maintenance"],
)

# OpenAI-compatible shim
router.include_router(
    compat.router,
    tags=["Compatibility"],
)

__all__ = ["router"]
