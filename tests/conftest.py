"""Pytest fixtures for loan engine tests.

Provider APIs are served by httpx.MockTransport; no test reaches the network.
"""

from __future__ import annotations

import itertools
import json
from collections.abc import Iterator
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Sequence
from uuid import uuid4

import httpx
import pytest
from sqlalchemy.orm import Session, sessionmaker

from loan_engine.config import Settings
from loan_engine.database import make_engine, make_session_factory
from loan_engine.models import Base, Loan, LoanScheduleLine
from loan_engine.payments.config import PaymentsConfig, create_sandbox_config
from loan_engine.payments.events import DomainEvent, EventEmitter
from loan_engine.payments.providers import build_providers

# In-memory SQLite shared by every session of one test
TEST_DATABASE_URL = "sqlite://"

# penalty, fees, interest, principal
SCENARIO_A_LINE = (Decimal("500.00"), Decimal("200.00"), Decimal("800.00"), Decimal("3000.00"))


class FixedClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def engine():
    """Create a fresh in-memory database per test."""
    engine = make_engine(TEST_DATABASE_URL)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return make_session_factory(engine)


@pytest.fixture
def session(session_factory) -> Iterator[Session]:
    """Create a database session for each test."""
    with session_factory() as session:
        yield session
        session.rollback()


@pytest.fixture
def make_loan(session):
    """Factory for committed loans with a repayment schedule.

    ``lines`` is a sequence of (penalty, fees, interest, principal) dues,
    one per installment, due 30 days apart.
    """
    numbers = itertools.count(1)

    def _make(
        lines: Sequence[tuple[Decimal, Decimal, Decimal, Decimal]] = (SCENARIO_A_LINE,),
        status: str = "ACTIVE",
        currency: str = "KES",
        loan_number: str | None = None,
        first_due: date = date(2026, 1, 31),
    ) -> Loan:
        loan = Loan(
            loan_number=loan_number or f"LN{next(numbers):06d}",
            borrower_id=uuid4(),
            currency=currency,
            status=status,
        )
        session.add(loan)
        session.flush()
        for number, (penalty, fees, interest, principal) in enumerate(lines, start=1):
            session.add(
                LoanScheduleLine(
                    loan_id=loan.id,
                    installment_number=number,
                    due_date=first_due + timedelta(days=30 * (number - 1)),
                    penalty_due=Decimal(penalty),
                    fees_due=Decimal(fees),
                    interest_due=Decimal(interest),
                    principal_due=Decimal(principal),
                )
            )
        session.commit()
        return loan

    return _make


@pytest.fixture
def make_settings():
    """Factory for Settings with every provider disabled unless overridden."""

    def _make(**overrides) -> Settings:
        values = dict(
            database_url=TEST_DATABASE_URL,
            host="127.0.0.1",
            port=8000,
            debug=False,
            log_level="INFO",
            log_json=False,
            payments_environment="sandbox",
            mpesa_consumer_key=None,
            mpesa_consumer_secret=None,
            mpesa_short_code=None,
            mpesa_pass_key=None,
            mpesa_callback_url=None,
            airtel_client_id=None,
            airtel_client_secret=None,
            airtel_country="KE",
            airtel_callback_url=None,
            bank_name=None,
            bank_account_number=None,
            bank_account_name=None,
            bank_branch_code=None,
            bank_swift_code=None,
            default_currency="KES",
            sweep_interval_seconds=60,
        )
        values.update(overrides)
        return Settings(**values)

    return _make


# Daraja and Airtel timestamps are East Africa Time
EAT = timezone(timedelta(hours=3))


class FakeProviderApi:
    """Scripted Daraja and Airtel Open API endpoints.

    Every request is recorded. Responses default to the happy path and can
    be overridden per test through the public attributes.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.transport_error: httpx.HTTPError | None = None
        self._checkout_ids = (f"ws_CO_{n:012d}" for n in itertools.count(1))
        self._queued_checkout_ids: list[str] = []

        # (status code, body) overrides; None means the default success
        self.stk_push: tuple[int, dict[str, Any]] | None = None
        self.stk_query: tuple[int, dict[str, Any]] = (
            200,
            {"ResponseCode": "0", "ResultCode": "0", "ResultDesc": "The service request is processed successfully."},
        )
        self.airtel_payment: tuple[int, dict[str, Any]] | None = None
        self.airtel_status = "TS"

    def queue_checkout_id(self, checkout_id: str) -> None:
        self._queued_checkout_ids.append(checkout_id)

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.transport_error is not None:
            raise self.transport_error

        path = request.url.path
        if path == "/oauth/v1/generate":
            return httpx.Response(200, json={"access_token": "mpesa-token", "expires_in": "3599"})
        if path == "/mpesa/stkpush/v1/processrequest":
            return self._stk_push()
        if path == "/mpesa/stkpushquery/v1/query":
            status_code, body = self.stk_query
            return httpx.Response(status_code, json=body)
        if path == "/auth/oauth2/token":
            return httpx.Response(200, json={"access_token": "airtel-token", "expires_in": "180"})
        if path == "/merchant/v1/payments/":
            return self._airtel_payment(request)
        if path.startswith("/standard/v1/payments/"):
            return self._airtel_enquiry(path.rsplit("/", 1)[-1])
        return httpx.Response(404, json={"message": f"no route {path}"})

    def _stk_push(self) -> httpx.Response:
        if self.stk_push is not None:
            status_code, body = self.stk_push
            return httpx.Response(status_code, json=body)
        checkout_id = (
            self._queued_checkout_ids.pop(0) if self._queued_checkout_ids else next(self._checkout_ids)
        )
        return httpx.Response(
            200,
            json={
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": checkout_id,
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            },
        )

    def _airtel_payment(self, request: httpx.Request) -> httpx.Response:
        if self.airtel_payment is not None:
            status_code, body = self.airtel_payment
            return httpx.Response(status_code, json=body)
        transaction_id = json.loads(request.content)["transaction"]["id"]
        return httpx.Response(
            200,
            json={
                "data": {"transaction": {"id": transaction_id, "status": "SUCCESS"}},
                "status": {
                    "code": "200",
                    "message": "SUCCESS",
                    "response_code": "DP00800001006",
                    "success": True,
                },
            },
        )

    def _airtel_enquiry(self, transaction_id: str) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "data": {
                    "transaction": {
                        "id": transaction_id,
                        "status": self.airtel_status,
                        "airtel_money_id": "MP210603.1234.L06941",
                        "message": "success",
                    }
                },
                "status": {"code": "200", "message": "SUCCESS", "success": True},
            },
        )

    # -------------------------------------------------------------------------
    # Inbound payloads
    # -------------------------------------------------------------------------

    @staticmethod
    def stk_callback(
        checkout_id: str,
        amount: Decimal | int | None = 5000,
        result_code: int = 0,
        receipt: str = "NLJ7RT61SV",
        phone: int = 254712345678,
        when: datetime | None = None,
    ) -> dict[str, Any]:
        callback: dict[str, Any] = {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": checkout_id,
            "ResultCode": result_code,
            "ResultDesc": (
                "The service request is processed successfully."
                if result_code == 0
                else "Request cancelled by user"
            ),
        }
        if result_code == 0:
            items: list[dict[str, Any]] = [
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "PhoneNumber", "Value": phone},
            ]
            if amount is not None:
                items.append({"Name": "Amount", "Value": str(amount)})
            if when is not None:
                items.append(
                    {"Name": "TransactionDate", "Value": int(when.astimezone(EAT).strftime("%Y%m%d%H%M%S"))}
                )
            callback["CallbackMetadata"] = {"Item": items}
        return {"Body": {"stkCallback": callback}}

    @staticmethod
    def c2b_confirmation(
        trans_id: str,
        amount: Decimal | int,
        bill_ref: str,
        when: datetime,
        msisdn: str = "254712345678",
    ) -> dict[str, Any]:
        return {
            "TransactionType": "Pay Bill",
            "TransID": trans_id,
            "TransTime": when.astimezone(EAT).strftime("%Y%m%d%H%M%S"),
            "TransAmount": str(amount),
            "BusinessShortCode": "174379",
            "BillRefNumber": bill_ref,
            "MSISDN": msisdn,
            "FirstName": "Jane",
        }

    @staticmethod
    def airtel_callback(
        transaction_id: str,
        status_code: str = "TS",
        amount: Decimal | int | None = None,
    ) -> dict[str, Any]:
        transaction: dict[str, Any] = {
            "id": transaction_id,
            "message": "Paid" if status_code == "TS" else "Failed",
            "status_code": status_code,
            "airtel_money_id": "MP210603.1234.L06941",
        }
        if amount is not None:
            transaction["amount"] = str(amount)
        return {"transaction": transaction}


@pytest.fixture
def provider_api() -> FakeProviderApi:
    return FakeProviderApi()


@pytest.fixture
def http_client(provider_api) -> Iterator[httpx.Client]:
    client = httpx.Client(transport=httpx.MockTransport(provider_api.handler))
    yield client
    client.close()


@pytest.fixture
def payments_config() -> PaymentsConfig:
    return create_sandbox_config()


@pytest.fixture
def providers(payments_config, http_client, clock):
    return build_providers(payments_config, http_client, clock)


@pytest.fixture
def emitter() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def captured_events(emitter) -> list[DomainEvent]:
    """Every event the facade emits, in order."""
    events: list[DomainEvent] = []
    emitter.on_all(events.append)
    return events


