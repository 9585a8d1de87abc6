"""API routes."""

from loan_engine.api.routes.health import router as health_router
from loan_engine.api.routes.payments import router as payments_router
from loan_engine.api.routes.review import router as review_router
from loan_engine.api.routes.webhooks import router as webhooks_router

__all__ = ["health_router", "payments_router", "review_router", "webhooks_router"]
