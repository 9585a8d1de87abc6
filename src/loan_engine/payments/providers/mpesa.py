"""M-Pesa push adapter (Daraja STK push, STK query and C2B confirmations).

The provider calls back asynchronously once per STK push under normal
operation, but may redeliver or deliver after the intent has expired. Paybill
deposits made without an STK push arrive as C2B confirmations and become
unsolicited events.
"""

from __future__ import annotations

import base64
import logging
import re
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

import httpx

from loan_engine.models.base import utcnow
from loan_engine.payments.config import MpesaConfig
from loan_engine.payments.errors import ProviderError, ValidationError
from loan_engine.payments.model import (
    C2BMetadata,
    Channel,
    EventSource,
    EventStatus,
    MpesaCallbackMetadata,
    Provider,
    ProviderEvent,
    StkPushMetadata,
    SubmissionRequest,
)
from loan_engine.payments.money import to_decimal
from loan_engine.payments.providers.base import Clock, HttpProviderMixin, SubmitResult

logger = logging.getLogger(__name__)

# Daraja timestamps are East Africa Time
EAT = timezone(timedelta(hours=3))

# STK query answers for a transaction still in progress
PENDING_RESULT_CODES = {"4999"}
PENDING_ERROR_CODES = {"500.001.1001"}

MSISDN_PATTERN = re.compile(r"^254[17]\d{8}$")

ACCOUNT_REFERENCE_MAX = 12
TRANSACTION_DESC_MAX = 13


def format_phone_number(phone: str) -> str:
    """Normalize a Kenyan mobile number to 2547XXXXXXXX / 2541XXXXXXXX.

    Raises:
        ValidationError: If the number is not a Kenyan mobile number
    """
    cleaned = re.sub(r"[\s\-()+]", "", phone or "")
    if cleaned.startswith("0"):
        cleaned = "254" + cleaned[1:]
    elif cleaned.startswith(("7", "1")) and len(cleaned) == 9:
        cleaned = "254" + cleaned
    if not MSISDN_PATTERN.match(cleaned):
        raise ValidationError(f"Invalid M-Pesa phone number: {phone!r}", field="payer_account_ref")
    return cleaned


def parse_daraja_timestamp(value: Any) -> datetime | None:
    """Parse a YYYYMMDDHHmmss EAT timestamp into UTC."""
    if value in (None, ""):
        return None
    try:
        local = datetime.strptime(str(value), "%Y%m%d%H%M%S")
    except ValueError:
        return None
    return local.replace(tzinfo=EAT).astimezone(timezone.utc)


class MpesaPushProvider(HttpProviderMixin):
    """Push-channel adapter for Safaricom M-Pesa."""

    provider = Provider.MPESA
    channel = Channel.PUSH
    minimum_unit = Decimal("1")

    def __init__(
        self,
        config: MpesaConfig,
        http_client: httpx.Client | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._config = config
        self._clock = clock
        self._init_http(http_client, config.timeout_seconds)

    def supported_currencies(self) -> tuple[str, ...]:
        return ("KES",)

    def expiry_timeout(self) -> timedelta | None:
        return self._config.pending_timeout

    def normalize_payer_account(self, value: str) -> str:
        return format_phone_number(value)

    def acknowledgement(self) -> dict[str, Any]:
        return {"ResultCode": 0, "ResultDesc": "Accepted"}

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    def _fetch_token(self) -> tuple[str, int]:
        credentials = f"{self._config.consumer_key}:{self._config.consumer_secret}"
        status_code, body = self._request(
            "GET",
            f"{self._config.base_url}/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            headers={
                "Authorization": "Basic " + base64.b64encode(credentials.encode()).decode(),
            },
        )
        token = body.get("access_token")
        if status_code != 200 or not token:
            raise ProviderError(
                f"M-Pesa token request failed (HTTP {status_code})",
                provider=self.provider.value,
            )
        return token, int(body.get("expires_in", 3599))

    def _password(self) -> tuple[str, str]:
        timestamp = self._clock().astimezone(EAT).strftime("%Y%m%d%H%M%S")
        raw = f"{self._config.short_code}{self._config.pass_key}{timestamp}"
        return base64.b64encode(raw.encode()).decode(), timestamp

    def submit(self, request: SubmissionRequest) -> SubmitResult:
        password, timestamp = self._password()
        phone = format_phone_number(request.payer_account_ref or "")
        amount = int(request.amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        payload = {
            "BusinessShortCode": self._config.short_code,
            "Password": password,
            "Timestamp": timestamp,
            "TransactionType": self._config.transaction_type,
            "Amount": amount,
            "PartyA": phone,
            "PartyB": self._config.short_code,
            "PhoneNumber": phone,
            "CallBackURL": self._config.callback_url,
            "AccountReference": (request.account_reference or request.internal_reference)[
                :ACCOUNT_REFERENCE_MAX
            ],
            "TransactionDesc": (request.description or "Loan repayment")[:TRANSACTION_DESC_MAX],
        }

        status_code, body = self._request(
            "POST",
            f"{self._config.base_url}/mpesa/stkpush/v1/processrequest",
            json=payload,
            headers={"Authorization": f"Bearer {self._access_token()}"},
        )

        if str(body.get("ResponseCode")) == "0" and body.get("CheckoutRequestID"):
            logger.info(
                "M-Pesa accepted STK push %s",
                request.internal_reference,
                extra={
                    "internal_reference": request.internal_reference,
                    "external_reference": body["CheckoutRequestID"],
                    "provider": self.provider.value,
                },
            )
            return SubmitResult(
                accepted=True,
                external_reference=body["CheckoutRequestID"],
                message=body.get("CustomerMessage") or body.get("ResponseDescription", ""),
                result_code="0",
                metadata=StkPushMetadata(
                    merchant_request_id=body.get("MerchantRequestID"),
                    checkout_request_id=body["CheckoutRequestID"],
                    customer_message=body.get("CustomerMessage"),
                ),
            )

        if status_code >= 500:
            raise self._server_error(status_code, body)

        return SubmitResult(
            accepted=False,
            external_reference=None,
            message=body.get("errorMessage") or body.get("ResponseDescription") or "Rejected",
            result_code=str(body.get("errorCode") or body.get("ResponseCode") or status_code),
        )

    def poll(self, external_reference: str) -> ProviderEvent | None:
        password, timestamp = self._password()
        status_code, body = self._request(
            "POST",
            f"{self._config.base_url}/mpesa/stkpushquery/v1/query",
            json={
                "BusinessShortCode": self._config.short_code,
                "Password": password,
                "Timestamp": timestamp,
                "CheckoutRequestID": external_reference,
            },
            headers={"Authorization": f"Bearer {self._access_token()}"},
        )

        error_code = body.get("errorCode")
        if error_code is not None:
            if str(error_code) in PENDING_ERROR_CODES:
                return self._query_event(external_reference, EventStatus.PENDING, body)
            raise ProviderError(
                f"M-Pesa status query failed: {error_code} {body.get('errorMessage', '')}".rstrip(),
                provider=self.provider.value,
            )
        if status_code >= 500:
            raise self._server_error(status_code, body)

        result_code = body.get("ResultCode")
        if result_code is None:
            raise ProviderError("M-Pesa status query returned no ResultCode", provider=self.provider.value)
        if str(result_code) == "0":
            return self._query_event(external_reference, EventStatus.SUCCESS, body)
        if str(result_code) in PENDING_RESULT_CODES:
            return self._query_event(external_reference, EventStatus.PENDING, body)
        return self._query_event(external_reference, EventStatus.FAILED, body)

    def _query_event(
        self,
        external_reference: str,
        status: EventStatus,
        body: dict[str, Any],
    ) -> ProviderEvent:
        return ProviderEvent(
            provider=self.provider,
            external_reference=external_reference,
            status=status,
            source=EventSource.POLL,
            result_code=str(body.get("ResultCode", body.get("errorCode", ""))) or None,
            result_description=body.get("ResultDesc") or body.get("errorMessage"),
            metadata=MpesaCallbackMetadata(
                merchant_request_id=body.get("MerchantRequestID"),
                checkout_request_id=external_reference,
            ),
            raw=body,
        )

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    def parse_callback(self, payload: Any) -> ProviderEvent | None:
        if not isinstance(payload, dict):
            logger.warning("M-Pesa callback is not a JSON object; ignoring")
            return None
        try:
            if isinstance(payload.get("Body"), dict) and "stkCallback" in payload["Body"]:
                return self._parse_stk_callback(payload)
            if "TransID" in payload and "TransAmount" in payload:
                return self._parse_c2b_confirmation(payload)
        except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
            logger.warning("Unparseable M-Pesa callback: %s", exc)
            return None

        logger.warning("Unrecognised M-Pesa callback shape: keys=%s", sorted(payload))
        return None

    def _parse_stk_callback(self, payload: dict[str, Any]) -> ProviderEvent | None:
        callback = payload["Body"]["stkCallback"]
        checkout_request_id = callback.get("CheckoutRequestID")
        if not checkout_request_id:
            logger.warning("M-Pesa STK callback without CheckoutRequestID; ignoring")
            return None

        result_code = int(callback["ResultCode"])
        items = {
            item["Name"]: item.get("Value")
            for item in (callback.get("CallbackMetadata") or {}).get("Item", [])
            if isinstance(item, dict) and "Name" in item
        }

        amount = to_decimal(items["Amount"]) if items.get("Amount") is not None else None
        receipt = items.get("MpesaReceiptNumber")
        phone = str(items["PhoneNumber"]) if items.get("PhoneNumber") is not None else None

        return ProviderEvent(
            provider=self.provider,
            external_reference=checkout_request_id,
            status=EventStatus.SUCCESS if result_code == 0 else EventStatus.FAILED,
            source=EventSource.CALLBACK,
            amount=amount,
            currency="KES",
            result_code=str(result_code),
            result_description=callback.get("ResultDesc"),
            receipt=receipt,
            payer_account_ref=phone,
            occurred_at=parse_daraja_timestamp(items.get("TransactionDate")),
            metadata=MpesaCallbackMetadata(
                merchant_request_id=callback.get("MerchantRequestID"),
                checkout_request_id=checkout_request_id,
                receipt_number=receipt,
                phone_number=phone,
                transaction_date=(
                    str(items["TransactionDate"]) if items.get("TransactionDate") else None
                ),
            ),
            raw=payload,
        )

    def _parse_c2b_confirmation(self, payload: dict[str, Any]) -> ProviderEvent | None:
        trans_id = str(payload["TransID"]).strip()
        if not trans_id:
            logger.warning("M-Pesa C2B confirmation without TransID; ignoring")
            return None
        bill_ref = (str(payload.get("BillRefNumber") or "").strip()) or None
        msisdn = str(payload["MSISDN"]) if payload.get("MSISDN") else None

        return ProviderEvent(
            provider=self.provider,
            external_reference=trans_id,
            status=EventStatus.SUCCESS,
            source=EventSource.C2B,
            amount=to_decimal(payload["TransAmount"]),
            currency="KES",
            result_code="0",
            result_description="C2B confirmation",
            receipt=trans_id,
            payer_account_ref=msisdn,
            account_reference=bill_ref,
            occurred_at=parse_daraja_timestamp(payload.get("TransTime")),
            metadata=C2BMetadata(
                trans_id=trans_id,
                bill_ref_number=bill_ref,
                msisdn=msisdn,
                business_short_code=payload.get("BusinessShortCode"),
                first_name=payload.get("FirstName"),
                last_name=payload.get("LastName"),
            ),
            raw=payload,
        )
