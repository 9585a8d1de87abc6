"""Initiation service - validates requests and submits them to providers.

Initiation is split in three so that no database transaction is open while
the provider is on the wire:

    prepare()  validate, create or find the PENDING intent (caller commits)
    submit()   one provider round trip, no database access
    record()   bind the external reference, or fail the intent (caller commits)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping
from uuid import UUID

from sqlalchemy.orm import Session

from loan_engine.models import Loan, PaymentIntent
from loan_engine.models.base import utcnow
from loan_engine.payments.errors import ProviderError, ValidationError
from loan_engine.payments.model import (
    BankInstructionMetadata,
    EventSource,
    InitiationRequest,
    InitiationResult,
    IntentState,
    Provider,
    ProviderStatus,
    SubmissionRequest,
    TransitionEvidence,
)
from loan_engine.payments.money import has_valid_scale, to_decimal
from loan_engine.payments.providers.base import Clock, PaymentChannelProvider, SubmitResult
from loan_engine.payments.services.ledger import LedgerService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreparedInitiation:
    """A validated request and the intent it maps to."""

    intent_id: UUID
    internal_reference: str
    provider: Provider
    submission: SubmissionRequest
    needs_submit: bool
    created: bool = False
    resubmitted: bool = False


class InitiationService:
    """Turns an InitiationRequest into a submitted PENDING intent."""

    def __init__(
        self,
        db: Session,
        ledger: LedgerService,
        providers: Mapping[Provider, PaymentChannelProvider],
        clock: Clock = utcnow,
    ):
        self.db = db
        self.ledger = ledger
        self.providers = providers
        self._clock = clock

    def adapter(self, provider: Provider | str) -> PaymentChannelProvider:
        """Look up the adapter for a provider.

        Raises:
            ValidationError: Unknown or disabled provider
        """
        try:
            key = Provider(provider)
        except ValueError:
            raise ValidationError(f"Unknown provider: {provider!r}", field="provider") from None
        adapter = self.providers.get(key)
        if adapter is None:
            raise ValidationError(f"Provider {key.value} is not enabled", field="provider")
        return adapter

    def prepare(self, request: InitiationRequest) -> PreparedInitiation:
        """Validate and find or create the intent.

        A request carrying an internal reference we already know is a client
        retry: it never creates a second intent.

        Raises:
            ValidationError: Bad input; nothing is written
        """
        adapter = self.adapter(request.provider)

        if request.internal_reference:
            existing = self.ledger.find_by_internal_reference(request.internal_reference)
            if existing is not None:
                return self._prepare_retry(existing, request)

        amount = self._validate_amount(request.amount, adapter)
        if not request.payer_account_ref or not str(request.payer_account_ref).strip():
            raise ValidationError("payer_account_ref is required", field="payer_account_ref")
        payer = adapter.normalize_payer_account(str(request.payer_account_ref))

        loan = self.db.get(Loan, request.loan_id) if request.loan_id else None
        if loan is None:
            raise ValidationError(f"Unknown loan: {request.loan_id}", field="loan_id")
        if loan.status != "ACTIVE":
            raise ValidationError(
                f"Loan {loan.loan_number} is {loan.status} and cannot take repayments",
                field="loan_id",
            )

        currency = (request.currency or loan.currency).upper()
        if currency != loan.currency:
            raise ValidationError(
                f"Currency {currency} does not match loan currency {loan.currency}",
                field="currency",
            )
        if currency not in adapter.supported_currencies():
            raise ValidationError(
                f"{adapter.provider.value} cannot collect {currency}",
                field="currency",
            )

        intent = self.ledger.create_intent(
            provider=adapter.provider,
            channel=adapter.channel,
            amount=amount,
            currency=currency,
            payer_account_ref=payer,
            account_reference=loan.loan_number,
            loan_id=loan.id,
            borrower_id=loan.borrower_id,
            description=request.description,
            internal_reference=request.internal_reference,
        )
        return PreparedInitiation(
            intent_id=intent.id,
            internal_reference=intent.internal_reference,
            provider=adapter.provider,
            submission=self._submission(intent),
            needs_submit=True,
            created=True,
        )

    def _prepare_retry(self, intent: PaymentIntent, request: InitiationRequest) -> PreparedInitiation:
        if intent.provider != Provider(request.provider).value or (
            request.loan_id is not None and intent.loan_id != request.loan_id
        ):
            raise ValidationError(
                f"Reference {intent.internal_reference} belongs to a different request",
                field="internal_reference",
            )

        # Resubmit only if the provider never acknowledged the first attempt
        needs_submit = (
            IntentState(intent.state) is IntentState.PENDING and intent.external_reference is None
        )
        logger.info(
            "Initiation retry for %s (%s, %s)",
            intent.internal_reference,
            intent.state,
            "resubmitting" if needs_submit else "returning current state",
            extra={"intent_id": str(intent.id), "internal_reference": intent.internal_reference},
        )
        return PreparedInitiation(
            intent_id=intent.id,
            internal_reference=intent.internal_reference,
            provider=Provider(intent.provider),
            submission=self._submission(intent),
            needs_submit=needs_submit,
            resubmitted=needs_submit,
        )

    @staticmethod
    def _validate_amount(value: object, adapter: PaymentChannelProvider) -> Decimal:
        try:
            amount = to_decimal(value)
        except ValueError:
            raise ValidationError(f"Invalid amount: {value!r}", field="amount") from None
        if amount <= 0:
            raise ValidationError("Amount must be positive", field="amount")
        if not has_valid_scale(amount):
            raise ValidationError("Amount may have at most two decimal places", field="amount")
        if amount % adapter.minimum_unit != 0:
            raise ValidationError(
                f"{adapter.provider.value} collects in units of {adapter.minimum_unit}",
                field="amount",
            )
        return amount

    @staticmethod
    def _submission(intent: PaymentIntent) -> SubmissionRequest:
        return SubmissionRequest(
            internal_reference=intent.internal_reference,
            amount=intent.amount,
            currency=intent.currency,
            payer_account_ref=intent.payer_account_ref,
            account_reference=intent.account_reference,
            description=intent.description,
        )

    def submit(self, prepared: PreparedInitiation) -> SubmitResult:
        """One provider round trip. Must be called with no transaction open.

        Raises:
            ProviderError: Carrying the internal reference; the intent stays PENDING
        """
        adapter = self.adapter(prepared.provider)
        try:
            return adapter.submit(prepared.submission)
        except ProviderError as exc:
            logger.warning(
                "Submission of %s failed: %s",
                prepared.internal_reference,
                exc.message,
                extra={
                    "intent_id": str(prepared.intent_id),
                    "internal_reference": prepared.internal_reference,
                    "provider": prepared.provider.value,
                },
            )
            raise ProviderError(
                exc.message,
                provider=prepared.provider.value,
                internal_reference=prepared.internal_reference,
                retryable=exc.retryable,
            ) from exc

    def record(self, prepared: PreparedInitiation, result: SubmitResult) -> InitiationResult:
        """Store the provider's synchronous answer."""
        if result.accepted and result.external_reference:
            self.ledger.bind_external_reference(
                prepared.intent_id,
                result.external_reference,
                result.metadata,
            )
        elif not result.accepted:
            self.ledger.transition(
                prepared.intent_id,
                IntentState.FAILED,
                TransitionEvidence(
                    source=EventSource.SUBMISSION,
                    result_code=result.result_code,
                    result_description=result.message or "Rejected by provider",
                    metadata=result.metadata,
                ),
            )
            logger.warning(
                "Provider rejected %s: %s",
                prepared.internal_reference,
                result.message,
                extra={
                    "intent_id": str(prepared.intent_id),
                    "internal_reference": prepared.internal_reference,
                    "provider": prepared.provider.value,
                },
            )

        intent = self.ledger.get(prepared.intent_id)
        return InitiationResult(
            intent_id=intent.id,
            internal_reference=intent.internal_reference,
            provider_status=ProviderStatus.ACCEPTED if result.accepted else ProviderStatus.REJECTED,
            provider_message=result.message,
            state=IntentState(intent.state),
            external_reference=intent.external_reference,
            resubmitted=prepared.resubmitted,
            instructions=(
                result.metadata if isinstance(result.metadata, BankInstructionMetadata) else None
            ),
        )

    def current(self, prepared: PreparedInitiation) -> InitiationResult:
        """Current state of an intent that does not need submitting."""
        intent = self.ledger.get(prepared.intent_id)
        state = IntentState(intent.state)
        rejected = state is IntentState.FAILED
        return InitiationResult(
            intent_id=intent.id,
            internal_reference=intent.internal_reference,
            provider_status=ProviderStatus.REJECTED if rejected else ProviderStatus.ACCEPTED,
            provider_message=intent.result_description or "",
            state=state,
            external_reference=intent.external_reference,
        )
