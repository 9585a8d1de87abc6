"""FastAPI dependencies for dependency injection."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session, sessionmaker

from loan_engine.config import Settings, get_settings
from loan_engine.database import make_engine, make_session_factory
from loan_engine.payments.config import PaymentsConfig, build_payments_config
from loan_engine.payments.facade import LoanPayments
from loan_engine.payments.model import Provider
from loan_engine.payments.providers import PaymentChannelProvider, build_providers


def _settings(request: Request) -> Settings:
    state = request.app.state
    if state.settings is None:
        state.settings = get_settings()
    return state.settings


def _session_factory(request: Request) -> sessionmaker[Session]:
    state = request.app.state
    if state.session_factory is None:
        state.session_factory = make_session_factory(make_engine(_settings(request).database_url))
    return state.session_factory


def _payments_config(request: Request) -> PaymentsConfig:
    state = request.app.state
    if state.payments_config is None:
        state.payments_config = build_payments_config(_settings(request))
    return state.payments_config


def _providers(request: Request) -> dict[Provider, PaymentChannelProvider]:
    state = request.app.state
    if state.providers is None:
        state.providers = build_providers(_payments_config(request))
    return state.providers


def get_payments_config(request: Request) -> PaymentsConfig:
    return _payments_config(request)


def get_db_session(request: Request) -> Iterator[Session]:
    """One session per request."""
    with _session_factory(request)() as session:
        yield session


DbSession = Annotated[Session, Depends(get_db_session)]


def get_payments(request: Request, db: DbSession) -> LoanPayments:
    """Payments facade bound to the request's session."""
    return LoanPayments(
        db,
        _payments_config(request),
        providers=_providers(request),
        event_emitter=request.app.state.event_emitter,
    )


def get_operator_id(
    x_operator_id: Annotated[str | None, Header()] = None,
) -> str:
    """Extract the operator making a review decision."""
    if not x_operator_id or not x_operator_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Operator-ID header is required",
        )
    return x_operator_id.strip()


# Type aliases for cleaner dependency injection
Payments = Annotated[LoanPayments, Depends(get_payments)]
OperatorId = Annotated[str, Depends(get_operator_id)]
Config = Annotated[PaymentsConfig, Depends(get_payments_config)]
