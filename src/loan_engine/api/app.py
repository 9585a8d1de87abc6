"""FastAPI application factory."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Mapping

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker

from loan_engine import __version__
from loan_engine.api.routes import (
    health_router,
    payments_router,
    review_router,
    webhooks_router,
)
from loan_engine.config import Settings
from loan_engine.payments.config import PaymentsConfig
from loan_engine.payments.errors import (
    AllocationError,
    NotFoundError,
    PaymentsError,
    ProviderError,
    ReconciliationConflict,
    ValidationError,
)
from loan_engine.payments.events import EventEmitter
from loan_engine.payments.model import Provider
from loan_engine.payments.providers import PaymentChannelProvider

logger = logging.getLogger(__name__)

# Most specific first; the first match wins
ERROR_STATUS: list[tuple[type[PaymentsError], int]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ReconciliationConflict, status.HTTP_409_CONFLICT),
    (AllocationError, status.HTTP_409_CONFLICT),
    (ProviderError, status.HTTP_502_BAD_GATEWAY),
]


def status_for(exc: PaymentsError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler."""
    yield
    # Shutdown: adapters built here own their HTTP clients
    if app.state.owns_providers and app.state.providers is not None:
        for adapter in app.state.providers.values():
            adapter.close()


def create_app(
    settings: Settings | None = None,
    session_factory: sessionmaker[Session] | None = None,
    payments_config: PaymentsConfig | None = None,
    providers: Mapping[Provider, PaymentChannelProvider] | None = None,
    event_emitter: EventEmitter | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Anything not passed in is resolved from the environment on first use,
    so importing this module never opens a database connection.
    """
    app = FastAPI(
        title="Loan Engine API",
        description="Loan repayment collection, reconciliation and allocation",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.payments_config = payments_config
    app.state.providers = dict(providers) if providers is not None else None
    app.state.owns_providers = providers is None
    app.state.event_emitter = event_emitter or EventEmitter()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PaymentsError)
    async def payments_error_handler(request: Request, exc: PaymentsError) -> JSONResponse:
        """Map the payments error taxonomy to HTTP."""
        code = status_for(exc)
        if code >= 500:
            logger.warning("%s on %s: %s", exc.code, request.url.path, exc.message)
        return JSONResponse(status_code=code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    app.include_router(health_router)
    app.include_router(webhooks_router)
    app.include_router(payments_router, prefix="/api/v1")
    app.include_router(review_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
