"""Webhook endpoint tests.

Every delivery is acknowledged with 200 and the provider's own body.
"""

from loan_engine.payments.events import PaymentConfirmed, UnattributedPaymentParked
from loan_engine.payments.facade import LoanPayments

MPESA_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}
AIRTEL_ACK = {"status": {"code": "200", "message": "Success", "success": True}}


class TestMpesaWebhook:
    """Test POST /webhooks/mpesa."""

    def test_success_callback(self, client, start_payment, make_loan, provider_api, captured_events):
        loan = make_loan()
        body = start_payment(loan, checkout_id="ABC123")

        response = client.post("/webhooks/mpesa", json=provider_api.stk_callback("ABC123"))

        assert response.status_code == 200
        assert response.json() == MPESA_ACK
        intent = client.get(f"/api/v1/payments/{body['internal_reference']}").json()
        assert intent["state"] == "CONFIRMED"
        assert intent["provider_receipt"] == "NLJ7RT61SV"
        assert len([e for e in captured_events if isinstance(e, PaymentConfirmed)]) == 1

    def test_duplicate_delivery(self, client, start_payment, make_loan, provider_api, captured_events):
        start_payment(make_loan(), checkout_id="ABC123")
        payload = provider_api.stk_callback("ABC123")

        first = client.post("/webhooks/mpesa", json=payload)
        second = client.post("/webhooks/mpesa", json=payload)

        assert first.json() == second.json() == MPESA_ACK
        assert len([e for e in captured_events if isinstance(e, PaymentConfirmed)]) == 1

    def test_body_that_is_not_json(self, client):
        response = client.post(
            "/webhooks/mpesa",
            content=b"<xml>nope</xml>",
            headers={"Content-Type": "application/xml"},
        )

        assert response.status_code == 200
        assert response.json() == MPESA_ACK

    def test_unrecognized_json(self, client):
        response = client.post("/webhooks/mpesa", json={"hello": "world"})

        assert response.status_code == 200
        assert response.json() == MPESA_ACK

    def test_processing_error_is_still_acknowledged(self, client, start_payment, make_loan, provider_api, monkeypatch):
        start_payment(make_loan(), checkout_id="ABC123")

        def broken(self, event, actor=None):
            raise RuntimeError("database went away")

        monkeypatch.setattr(LoanPayments, "apply_event", broken)

        response = client.post("/webhooks/mpesa", json=provider_api.stk_callback("ABC123"))

        assert response.status_code == 200
        assert response.json() == MPESA_ACK

    def test_unregistered_paybill_payment_is_parked(self, client, provider_api, clock, captured_events):
        response = client.post(
            "/webhooks/mpesa",
            json=provider_api.c2b_confirmation("QKA7XY12Z9", 1500, "NOT-A-LOAN", clock()),
        )

        assert response.json() == MPESA_ACK
        (parked,) = [e for e in captured_events if isinstance(e, UnattributedPaymentParked)]
        assert parked.external_reference == "QKA7XY12Z9"


class TestAirtelWebhook:
    """Test POST /webhooks/airtel."""

    def test_success_callback(self, client, start_payment, make_loan, provider_api):
        body = start_payment(make_loan(), provider="AIRTEL", amount="4500")

        response = client.post(
            "/webhooks/airtel",
            json=provider_api.airtel_callback(body["external_reference"]),
        )

        assert response.status_code == 200
        assert response.json() == AIRTEL_ACK
        intent = client.get(f"/api/v1/payments/{body['internal_reference']}").json()
        assert intent["state"] == "CONFIRMED"

    def test_failure_callback(self, client, start_payment, make_loan, provider_api):
        body = start_payment(make_loan(), provider="AIRTEL", amount="4500")

        client.post(
            "/webhooks/airtel",
            json=provider_api.airtel_callback(body["external_reference"], status_code="TF"),
        )

        intent = client.get(f"/api/v1/payments/{body['internal_reference']}").json()
        assert intent["state"] == "FAILED"
