"""API test fixtures."""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from loan_engine.api.app import create_app


@pytest.fixture
def client(session_factory, payments_config, providers, emitter) -> Iterator[TestClient]:
    """Client for an app wired to the in-memory database and fake providers."""
    app = create_app(
        session_factory=session_factory,
        payments_config=payments_config,
        providers=providers,
        event_emitter=emitter,
    )
    with TestClient(app) as client:
        yield client


@pytest.fixture
def start_payment(client, provider_api):
    """POST a repayment and return the response body."""

    def _start(loan, provider="MPESA", amount="5000", checkout_id=None, payer="0712345678") -> dict:
        if checkout_id is not None:
            provider_api.queue_checkout_id(checkout_id)
        if provider.upper() == "BANK":
            payer = "0123456789"
        response = client.post(
            "/api/v1/payments",
            json={
                "provider": provider,
                "loan_id": str(loan.id),
                "amount": amount,
                "payer_account_ref": payer,
            },
        )
        assert response.status_code == 201, response.text
        return response.json()

    return _start
