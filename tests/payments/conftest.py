"""Payments test fixtures: a LoanPayments facade over the fake provider APIs."""

from __future__ import annotations

from decimal import Decimal

import pytest

from loan_engine.payments.facade import LoanPayments
from loan_engine.payments.model import InitiationRequest, InitiationResult, Provider


@pytest.fixture
def payments(session, payments_config, providers, emitter, clock) -> LoanPayments:
    return LoanPayments(
        session,
        payments_config,
        providers=providers,
        event_emitter=emitter,
        clock=clock,
    )


@pytest.fixture
def initiate(payments, provider_api):
    """Initiate a repayment; M-Pesa pushes get the given CheckoutRequestID."""

    def _initiate(
        loan,
        amount: str = "5000",
        provider: Provider = Provider.MPESA,
        checkout_id: str | None = None,
        payer: str = "0712345678",
    ) -> InitiationResult:
        if checkout_id is not None:
            provider_api.queue_checkout_id(checkout_id)
        if provider is Provider.BANK:
            payer = "0123456789"
        return payments.initiate(
            InitiationRequest(
                provider=provider,
                loan_id=loan.id,
                amount=Decimal(amount),
                payer_account_ref=payer,
            )
        )

    return _initiate
