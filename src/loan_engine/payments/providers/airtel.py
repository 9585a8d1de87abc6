"""Airtel Money pull adapter (USSD push collection with status enquiry).

Airtel's callback is not guaranteed to arrive, so PENDING intents are also
polled through the transaction enquiry API. Both paths may report the same
success; the ledger's compare-and-swap makes the second one a no-op.
"""

from __future__ import annotations

import logging
import re
from datetime import timedelta
from decimal import Decimal
from typing import Any

import httpx

from loan_engine.models.base import utcnow
from loan_engine.payments.config import AIRTEL_COUNTRIES, AirtelConfig
from loan_engine.payments.errors import ProviderError, ValidationError
from loan_engine.payments.model import (
    AirtelCallbackMetadata,
    AirtelSubmitMetadata,
    Channel,
    EventSource,
    EventStatus,
    Provider,
    ProviderEvent,
    SubmissionRequest,
)
from loan_engine.payments.money import to_decimal
from loan_engine.payments.providers.base import Clock, HttpProviderMixin, SubmitResult

logger = logging.getLogger(__name__)

# Airtel transaction status codes
STATUS_SUCCESS = "TS"
STATUS_FAILED = "TF"
STATUS_AMBIGUOUS = "TA"
STATUS_IN_PROGRESS = "TIP"

NATIONAL_NUMBER = re.compile(r"^\d{9}$")


def format_phone_number(phone: str, country: str) -> str:
    """Normalize to the national number Airtel expects (no country code).

    Raises:
        ValidationError: If the number cannot be normalized
    """
    cleaned = re.sub(r"\D", "", phone or "")
    dialing_code = AIRTEL_COUNTRIES[country][0]
    if cleaned.startswith(dialing_code) and len(cleaned) > 9:
        cleaned = cleaned[len(dialing_code):]
    if cleaned.startswith("0"):
        cleaned = cleaned[1:]
    if not NATIONAL_NUMBER.match(cleaned):
        raise ValidationError(f"Invalid Airtel Money phone number: {phone!r}", field="payer_account_ref")
    return cleaned


def _event_status(code: str | None) -> EventStatus:
    if code == STATUS_SUCCESS:
        return EventStatus.SUCCESS
    if code == STATUS_FAILED:
        return EventStatus.FAILED
    return EventStatus.PENDING


class AirtelPullProvider(HttpProviderMixin):
    """Pull-channel adapter for Airtel Money."""

    provider = Provider.AIRTEL
    channel = Channel.PULL
    minimum_unit = Decimal("1")

    def __init__(
        self,
        config: AirtelConfig,
        http_client: httpx.Client | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._config = config
        self._clock = clock
        self._init_http(http_client, config.timeout_seconds)

    def supported_currencies(self) -> tuple[str, ...]:
        return (self._config.currency,)

    def expiry_timeout(self) -> timedelta | None:
        return self._config.pending_timeout

    def normalize_payer_account(self, value: str) -> str:
        return format_phone_number(value, self._config.country)

    def acknowledgement(self) -> dict[str, Any]:
        return {"status": {"code": "200", "message": "Success", "success": True}}

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token()}",
            "X-Country": self._config.country,
            "X-Currency": self._config.currency,
        }

    def _fetch_token(self) -> tuple[str, int]:
        status_code, body = self._request(
            "POST",
            f"{self._config.base_url}/auth/oauth2/token",
            json={
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
                "grant_type": "client_credentials",
            },
        )
        token = body.get("access_token")
        if status_code != 200 or not token:
            raise ProviderError(
                f"Airtel token request failed (HTTP {status_code})",
                provider=self.provider.value,
            )
        return token, int(body.get("expires_in", 180))

    def submit(self, request: SubmissionRequest) -> SubmitResult:
        payload = {
            "reference": request.account_reference or request.internal_reference,
            "subscriber": {
                "country": self._config.country,
                "currency": self._config.currency,
                "msisdn": format_phone_number(request.payer_account_ref or "", self._config.country),
            },
            "transaction": {
                "amount": int(request.amount),
                "country": self._config.country,
                "currency": self._config.currency,
                "id": request.internal_reference,
            },
        }
        status_code, body = self._request(
            "POST",
            f"{self._config.base_url}/merchant/v1/payments/",
            json=payload,
            headers=self._headers(),
        )

        status = body.get("status") or {}
        if status.get("success") is True or str(status.get("code")) == "200":
            transaction = (body.get("data") or {}).get("transaction") or {}
            transaction_id = str(transaction.get("id") or request.internal_reference)
            return SubmitResult(
                accepted=True,
                external_reference=transaction_id,
                message=status.get("message", ""),
                result_code=status.get("response_code") or str(status.get("code")),
                metadata=AirtelSubmitMetadata(
                    transaction_id=transaction_id,
                    status_code=transaction.get("status"),
                    status_message=status.get("message"),
                ),
            )

        if status_code >= 500:
            raise self._server_error(status_code, body)

        return SubmitResult(
            accepted=False,
            external_reference=None,
            message=status.get("message") or "Rejected",
            result_code=status.get("response_code") or str(status.get("code") or status_code),
        )

    def poll(self, external_reference: str) -> ProviderEvent | None:
        status_code, body = self._request(
            "GET",
            f"{self._config.base_url}/standard/v1/payments/{external_reference}",
            headers=self._headers(),
        )
        status = body.get("status") or {}
        if status_code >= 400 or status.get("success") is not True:
            raise ProviderError(
                f"Airtel enquiry failed: {status.get('message') or status_code}",
                provider=self.provider.value,
            )

        transaction = (body.get("data") or {}).get("transaction") or {}
        code = transaction.get("status")
        return ProviderEvent(
            provider=self.provider,
            external_reference=external_reference,
            status=_event_status(code),
            source=EventSource.POLL,
            result_code=code,
            result_description=transaction.get("message") or status.get("message"),
            receipt=transaction.get("airtel_money_id"),
            internal_reference=external_reference,
            metadata=AirtelCallbackMetadata(
                transaction_id=external_reference,
                airtel_money_id=transaction.get("airtel_money_id"),
                status_code=code,
                message=transaction.get("message"),
            ),
            raw=body,
        )

    def parse_callback(self, payload: Any) -> ProviderEvent | None:
        if not isinstance(payload, dict) or not isinstance(payload.get("transaction"), dict):
            logger.warning("Unrecognised Airtel callback shape; ignoring")
            return None

        transaction = payload["transaction"]
        transaction_id = str(transaction.get("id") or "").strip()
        if not transaction_id:
            logger.warning("Airtel callback without transaction id; ignoring")
            return None

        code = transaction.get("status_code")
        try:
            amount = (
                to_decimal(transaction["amount"]) if transaction.get("amount") is not None else None
            )
        except ValueError as exc:
            logger.warning("Unparseable Airtel callback amount: %s", exc)
            return None

        return ProviderEvent(
            provider=self.provider,
            external_reference=transaction_id,
            status=_event_status(code),
            source=EventSource.CALLBACK,
            amount=amount,
            currency=self._config.currency,
            result_code=code,
            result_description=transaction.get("message"),
            receipt=transaction.get("airtel_money_id"),
            internal_reference=transaction_id,
            metadata=AirtelCallbackMetadata(
                transaction_id=transaction_id,
                airtel_money_id=transaction.get("airtel_money_id"),
                status_code=code,
                message=transaction.get("message"),
            ),
            raw=payload,
        )
