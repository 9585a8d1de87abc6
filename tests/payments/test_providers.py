"""Tests for payment channel provider adapters.

Tests verify:
1. Payer account normalization per provider
2. Submission against scripted provider APIs (accept, reject, outage)
3. Callback parsing into canonical events, and tolerance of garbage
4. Status queries
5. Bank transfer instructions and reviewer decisions
"""

from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from loan_engine.payments.errors import ProviderError, ValidationError
from loan_engine.payments.model import (
    BankInstructionMetadata,
    BankReviewMetadata,
    C2BMetadata,
    Channel,
    EventSource,
    EventStatus,
    Provider,
    StkPushMetadata,
    SubmissionRequest,
)
from loan_engine.payments.providers import (
    AirtelPullProvider,
    BankTransferProvider,
    MpesaPushProvider,
)
from loan_engine.payments.providers.airtel import format_phone_number as airtel_phone
from loan_engine.payments.providers.mpesa import format_phone_number as mpesa_phone


def _request(reference: str = "MPE0001", amount: str = "5000.00", payer: str = "0712345678"):
    return SubmissionRequest(
        internal_reference=reference,
        amount=Decimal(amount),
        currency="KES",
        payer_account_ref=payer,
        account_reference="LN000001",
        description="Loan repayment",
    )


class TestPhoneNormalization:
    """Test payer account normalization."""

    @pytest.mark.parametrize(
        "raw",
        ["0712345678", "712345678", "254712345678", "+254 712-345-678", "(0712) 345678"],
    )
    def test_mpesa_accepts_kenyan_mobile_formats(self, raw):
        """All common Kenyan formats normalize to 2547XXXXXXXX."""
        assert mpesa_phone(raw) == "254712345678"

    def test_mpesa_accepts_new_prefix(self):
        """011x numbers are valid Safaricom lines."""
        assert mpesa_phone("0112345678") == "254112345678"

    @pytest.mark.parametrize("raw", ["", "0812345678", "12345", "2557123456789"])
    def test_mpesa_rejects_invalid(self, raw):
        with pytest.raises(ValidationError) as exc_info:
            mpesa_phone(raw)
        assert exc_info.value.details["field"] == "payer_account_ref"

    def test_airtel_strips_country_code(self):
        """Airtel expects the national number without the dialing code."""
        assert airtel_phone("+254 712 345 678", "KE") == "712345678"
        assert airtel_phone("0712345678", "KE") == "712345678"
        assert airtel_phone("256712345678", "UG") == "712345678"

    def test_airtel_rejects_short_number(self):
        with pytest.raises(ValidationError):
            airtel_phone("07123", "KE")


class TestMpesaPushProvider:
    """Test the M-Pesa STK push adapter."""

    def test_capabilities(self, providers):
        """M-Pesa is the push channel and collects whole shillings."""
        mpesa = providers[Provider.MPESA]
        assert isinstance(mpesa, MpesaPushProvider)
        assert mpesa.channel is Channel.PUSH
        assert mpesa.supported_currencies() == ("KES",)
        assert mpesa.minimum_unit == Decimal("1")
        assert mpesa.expiry_timeout() == timedelta(minutes=5)
        assert mpesa.acknowledgement() == {"ResultCode": 0, "ResultDesc": "Accepted"}

    def test_submit_accepted(self, providers, provider_api):
        """Accepted STK push returns the CheckoutRequestID as external reference."""
        provider_api.queue_checkout_id("ws_CO_ABC")

        result = providers[Provider.MPESA].submit(_request())

        assert result.accepted is True
        assert result.external_reference == "ws_CO_ABC"
        assert isinstance(result.metadata, StkPushMetadata)
        assert result.metadata.checkout_request_id == "ws_CO_ABC"

        push = provider_api.requests[-1]
        assert push.headers["Authorization"] == "Bearer mpesa-token"
        body = push.read()
        assert b'"PhoneNumber":"254712345678"' in body.replace(b" ", b"")
        assert b'"Amount":5000' in body.replace(b" ", b"")

    def test_token_is_reused(self, providers, provider_api):
        """One OAuth call serves consecutive submissions."""
        mpesa = providers[Provider.MPESA]
        mpesa.submit(_request("MPE0001"))
        mpesa.submit(_request("MPE0002"))

        assert provider_api.paths().count("/oauth/v1/generate") == 1
        assert provider_api.paths().count("/mpesa/stkpush/v1/processrequest") == 2

    def test_token_refreshed_after_expiry(self, providers, provider_api, clock):
        mpesa = providers[Provider.MPESA]
        mpesa.submit(_request("MPE0001"))
        clock.advance(hours=1)
        mpesa.submit(_request("MPE0002"))

        assert provider_api.paths().count("/oauth/v1/generate") == 2

    def test_submit_rejected(self, providers, provider_api):
        """A 4xx with a Daraja error is a rejection, not an outage."""
        provider_api.stk_push = (
            400,
            {
                "requestId": "16813-15-1",
                "errorCode": "400.002.02",
                "errorMessage": "Bad Request - Invalid PhoneNumber",
            },
        )

        result = providers[Provider.MPESA].submit(_request())

        assert result.accepted is False
        assert result.external_reference is None
        assert result.result_code == "400.002.02"
        assert "Invalid PhoneNumber" in result.message

    def test_submit_server_error_raises(self, providers, provider_api):
        provider_api.stk_push = (503, {"errorMessage": "Service unavailable"})

        with pytest.raises(ProviderError) as exc_info:
            providers[Provider.MPESA].submit(_request())
        assert exc_info.value.provider == "MPESA"
        assert exc_info.value.retryable is True

    def test_transport_error_raises(self, providers, provider_api):
        provider_api.transport_error = httpx.ConnectError("connection refused")

        with pytest.raises(ProviderError):
            providers[Provider.MPESA].submit(_request())

    def test_parse_stk_success(self, providers, provider_api, clock):
        """A successful STK callback becomes a SUCCESS event with receipt and amount."""
        event = providers[Provider.MPESA].parse_callback(
            provider_api.stk_callback("ws_CO_ABC", amount=5000, when=clock())
        )

        assert event is not None
        assert event.provider is Provider.MPESA
        assert event.external_reference == "ws_CO_ABC"
        assert event.status is EventStatus.SUCCESS
        assert event.source is EventSource.CALLBACK
        assert event.amount == Decimal("5000")
        assert event.receipt == "NLJ7RT61SV"
        assert event.payer_account_ref == "254712345678"
        assert event.occurred_at == clock()
        assert event.idempotency_key == ("MPESA", "ws_CO_ABC", "SUCCESS")

    def test_parse_stk_failure(self, providers, provider_api):
        event = providers[Provider.MPESA].parse_callback(
            provider_api.stk_callback("ws_CO_ABC", result_code=1032)
        )

        assert event is not None
        assert event.status is EventStatus.FAILED
        assert event.result_code == "1032"
        assert event.amount is None

    def test_parse_c2b_confirmation(self, providers, provider_api, clock):
        """Paybill deposits carry the bill reference for heuristic matching."""
        event = providers[Provider.MPESA].parse_callback(
            provider_api.c2b_confirmation("RKTQDM7W6S", 1500, "LN000001", clock())
        )

        assert event is not None
        assert event.source is EventSource.C2B
        assert event.status is EventStatus.SUCCESS
        assert event.external_reference == "RKTQDM7W6S"
        assert event.account_reference == "LN000001"
        assert event.amount == Decimal("1500")
        assert isinstance(event.metadata, C2BMetadata)

    @pytest.mark.parametrize(
        "payload",
        [
            None,
            "not json",
            [],
            {"unexpected": True},
            {"Body": {"stkCallback": {"ResultCode": 0}}},
            {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_1", "ResultCode": "abc"}}},
            {"TransID": "X1", "TransAmount": "not-a-number"},
        ],
    )
    def test_garbage_callbacks_return_none(self, providers, payload):
        """Unparseable callbacks never raise."""
        assert providers[Provider.MPESA].parse_callback(payload) is None

    def test_poll_success(self, providers, provider_api):
        event = providers[Provider.MPESA].poll("ws_CO_ABC")

        assert event is not None
        assert event.status is EventStatus.SUCCESS
        assert event.source is EventSource.POLL
        assert event.external_reference == "ws_CO_ABC"

    def test_poll_still_processing(self, providers, provider_api):
        """Daraja reports in-flight transactions as an error code."""
        provider_api.stk_query = (
            500,
            {"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"},
        )

        event = providers[Provider.MPESA].poll("ws_CO_ABC")

        assert event is not None
        assert event.status is EventStatus.PENDING

    def test_poll_failed(self, providers, provider_api):
        provider_api.stk_query = (
            200,
            {"ResponseCode": "0", "ResultCode": "1032", "ResultDesc": "Request cancelled by user"},
        )

        event = providers[Provider.MPESA].poll("ws_CO_ABC")

        assert event is not None
        assert event.status is EventStatus.FAILED
        assert event.result_description == "Request cancelled by user"

    def test_poll_unknown_error_raises(self, providers, provider_api):
        provider_api.stk_query = (400, {"errorCode": "400.002.02", "errorMessage": "Invalid CheckoutRequestID"})

        with pytest.raises(ProviderError):
            providers[Provider.MPESA].poll("ws_CO_ABC")


class TestAirtelPullProvider:
    """Test the Airtel Money adapter."""

    def test_capabilities(self, providers):
        airtel = providers[Provider.AIRTEL]
        assert isinstance(airtel, AirtelPullProvider)
        assert airtel.channel is Channel.PULL
        assert airtel.supported_currencies() == ("KES",)
        assert airtel.expiry_timeout() == timedelta(minutes=10)

    def test_submit_accepted(self, providers, provider_api):
        """Airtel echoes our transaction id, which becomes the external reference."""
        result = providers[Provider.AIRTEL].submit(_request("AIR0001"))

        assert result.accepted is True
        assert result.external_reference == "AIR0001"
        request = provider_api.requests[-1]
        assert request.headers["X-Country"] == "KE"
        assert request.headers["X-Currency"] == "KES"

    def test_submit_rejected(self, providers, provider_api):
        provider_api.airtel_payment = (
            400,
            {"status": {"code": "400", "message": "Invalid MSISDN", "success": False}},
        )

        result = providers[Provider.AIRTEL].submit(_request("AIR0001"))

        assert result.accepted is False
        assert result.message == "Invalid MSISDN"

    @pytest.mark.parametrize(
        "code,expected",
        [("TS", EventStatus.SUCCESS), ("TF", EventStatus.FAILED), ("TIP", EventStatus.PENDING), ("TA", EventStatus.PENDING)],
    )
    def test_poll_maps_status(self, providers, provider_api, code, expected):
        provider_api.airtel_status = code

        event = providers[Provider.AIRTEL].poll("AIR0001")

        assert event is not None
        assert event.status is expected
        assert event.internal_reference == "AIR0001"

    def test_parse_callback(self, providers, provider_api):
        event = providers[Provider.AIRTEL].parse_callback(
            provider_api.airtel_callback("AIR0001", "TS", amount=1000)
        )

        assert event is not None
        assert event.status is EventStatus.SUCCESS
        assert event.amount == Decimal("1000")
        assert event.receipt == "MP210603.1234.L06941"

    @pytest.mark.parametrize("payload", [None, {}, {"transaction": "x"}, {"transaction": {"id": ""}}])
    def test_garbage_callbacks_return_none(self, providers, payload):
        assert providers[Provider.AIRTEL].parse_callback(payload) is None


class TestBankTransferProvider:
    """Test the manual bank transfer adapter."""

    def test_submit_returns_instructions(self, providers):
        """Submission never calls out; it tells the borrower where to pay."""
        bank = providers[Provider.BANK]
        assert isinstance(bank, BankTransferProvider)

        result = bank.submit(_request("BNK0001", payer="KE-001 234"))

        assert result.accepted is True
        assert result.external_reference == "BNK0001"
        assert isinstance(result.metadata, BankInstructionMetadata)
        assert result.metadata.reference == "BNK0001"
        assert result.metadata.account_number == "0000000000"

    def test_no_expiry_and_no_callbacks(self, providers):
        bank = providers[Provider.BANK]
        assert bank.expiry_timeout() is None
        assert bank.poll("BNK0001") is None
        assert bank.parse_callback({"anything": 1}) is None

    def test_normalize_account(self, providers):
        assert providers[Provider.BANK].normalize_payer_account(" ke-001 234 ") == "KE-001 234"
        with pytest.raises(ValidationError):
            providers[Provider.BANK].normalize_payer_account("x!")

    def test_verify_builds_success_event(self, providers):
        event = providers[Provider.BANK].verify(
            "BNK0001", "ops-1", bank_receipt_number="FT2603021234", amount=Decimal("4000.00")
        )

        assert event.status is EventStatus.SUCCESS
        assert event.source is EventSource.MANUAL
        assert event.receipt == "FT2603021234"
        assert event.amount == Decimal("4000.00")
        assert event.actor_id == "ops-1"
        assert isinstance(event.metadata, BankReviewMetadata)
        assert event.metadata.decision == "VERIFIED"

    def test_verify_requires_reviewer(self, providers):
        with pytest.raises(ValidationError):
            providers[Provider.BANK].verify("BNK0001", "")

    def test_verify_rejects_non_positive_amount(self, providers):
        with pytest.raises(ValidationError):
            providers[Provider.BANK].verify("BNK0001", "ops-1", amount=Decimal("0"))

    def test_reject_requires_reason(self, providers):
        with pytest.raises(ValidationError):
            providers[Provider.BANK].reject("BNK0001", "ops-1", "  ")

        event = providers[Provider.BANK].reject("BNK0001", "ops-1", " not on statement ")
        assert event.status is EventStatus.FAILED
        assert event.result_description == "not on statement"
