"""Manual bank transfer adapter.

There is no provider API: submission hands the borrower the collection
account details and a reference to quote, and the only outcomes are a
reviewer's verify or reject decision. Those decisions are turned into the
same canonical ProviderEvent automated providers produce, so a verified
transfer goes through the same reconciliation and allocation path.
"""

from __future__ import annotations

import logging
import re
from datetime import timedelta
from decimal import Decimal
from typing import Any

from loan_engine.payments.config import BankTransferConfig
from loan_engine.payments.errors import ValidationError
from loan_engine.payments.model import (
    BankInstructionMetadata,
    BankReviewMetadata,
    Channel,
    EventSource,
    EventStatus,
    Provider,
    ProviderEvent,
    SubmissionRequest,
)
from loan_engine.payments.providers.base import SubmitResult

logger = logging.getLogger(__name__)

ACCOUNT_PATTERN = re.compile(r"^[A-Za-z0-9\-/ ]{4,34}$")


class BankTransferProvider:
    """Manual-channel adapter for bank transfers."""

    provider = Provider.BANK
    channel = Channel.MANUAL
    minimum_unit = Decimal("0.01")

    def __init__(self, config: BankTransferConfig) -> None:
        self._config = config

    def supported_currencies(self) -> tuple[str, ...]:
        return self._config.currencies

    def expiry_timeout(self) -> timedelta | None:
        # Manual review has no deadline
        return None

    def normalize_payer_account(self, value: str) -> str:
        cleaned = (value or "").strip()
        if not ACCOUNT_PATTERN.match(cleaned):
            raise ValidationError(f"Invalid bank account reference: {value!r}", field="payer_account_ref")
        return cleaned.upper()

    def acknowledgement(self) -> dict[str, Any]:
        return {"status": "accepted"}

    def close(self) -> None:
        pass

    def submit(self, request: SubmissionRequest) -> SubmitResult:
        # The internal reference is what the borrower quotes on the transfer
        reference = request.internal_reference
        return SubmitResult(
            accepted=True,
            external_reference=reference,
            message=(
                f"Transfer {request.amount} {request.currency} to {self._config.bank_name} "
                f"account {self._config.account_number} quoting {reference}"
            ),
            result_code="AWAITING_TRANSFER",
            metadata=BankInstructionMetadata(
                bank_name=self._config.bank_name,
                account_number=self._config.account_number,
                account_name=self._config.account_name,
                reference=reference,
                branch_code=self._config.branch_code,
                swift_code=self._config.swift_code,
            ),
        )

    def parse_callback(self, payload: Any) -> ProviderEvent | None:
        logger.warning("Bank transfers have no callbacks; ignoring payload")
        return None

    def poll(self, external_reference: str) -> ProviderEvent | None:
        return None

    def verify(
        self,
        external_reference: str,
        reviewer_id: str,
        bank_receipt_number: str | None = None,
        amount: Decimal | None = None,
    ) -> ProviderEvent:
        """Reviewer confirmed the money is on the collection account.

        Args:
            external_reference: Reference the borrower quoted
            reviewer_id: Operator making the decision
            bank_receipt_number: Bank's own transaction reference
            amount: Amount actually received, if it differs from the request

        Raises:
            ValidationError: Missing reviewer or non-positive amount
        """
        if not reviewer_id:
            raise ValidationError("reviewer_id is required", field="reviewer_id")
        if amount is not None and amount <= 0:
            raise ValidationError("Verified amount must be positive", field="amount")

        return ProviderEvent(
            provider=self.provider,
            external_reference=external_reference,
            status=EventStatus.SUCCESS,
            source=EventSource.MANUAL,
            amount=amount,
            result_code="VERIFIED",
            result_description=f"Verified by {reviewer_id}",
            receipt=bank_receipt_number,
            internal_reference=external_reference,
            actor_id=reviewer_id,
            metadata=BankReviewMetadata(
                reviewer_id=reviewer_id,
                decision="VERIFIED",
                bank_receipt_number=bank_receipt_number,
            ),
        )

    def reject(self, external_reference: str, reviewer_id: str, reason: str) -> ProviderEvent:
        """Reviewer decided the transfer never arrived or is invalid.

        Raises:
            ValidationError: Missing reviewer or reason
        """
        if not reviewer_id:
            raise ValidationError("reviewer_id is required", field="reviewer_id")
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", field="reason")

        return ProviderEvent(
            provider=self.provider,
            external_reference=external_reference,
            status=EventStatus.FAILED,
            source=EventSource.MANUAL,
            result_code="REJECTED",
            result_description=reason.strip(),
            internal_reference=external_reference,
            actor_id=reviewer_id,
            metadata=BankReviewMetadata(
                reviewer_id=reviewer_id,
                decision="REJECTED",
                reason=reason.strip(),
            ),
        )
