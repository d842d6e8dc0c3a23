"""API routes."""

from halonet.api.routes.approvals import router as approvals_router
from halonet.api.routes.batches import router as batches_router
from halonet.api.routes.dashboard import router as dashboard_router
from halonet.api.routes.entries import router as entries_router
from halonet.api.routes.health import router as health_router
from halonet.api.routes.risk import router as risk_router
from halonet.api.routes.settings import router as settings_router
from halonet.api.routes.webhooks import router as webhooks_router

__all__ = [
    "approvals_router",
    "batches_router",
    "dashboard_router",
    "entries_router",
    "health_router",
    "risk_router",
    "settings_router",
    "webhooks_router",
]
