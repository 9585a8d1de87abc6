"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from loan_engine.payments.model import InitiationResult, load_metadata
from loan_engine.payments.services.allocation import AllocationResult, ReversalResult
from loan_engine.payments.services.ledger import IntentPage
from loan_engine.payments.services.reconciliation import (
    ReconcileOutcome,
    ReconciliationReport,
    UnallocatedMoney,
)


class ErrorResponse(BaseModel):
    """Operator-facing error body."""

    code: str
    detail: str


# ============================================================================
# Initiation
# ============================================================================


class InitiatePaymentRequest(BaseModel):
    """Schema for starting a repayment."""

    provider: str
    loan_id: UUID
    amount: Decimal = Field(gt=0)
    payer_account_ref: str = Field(min_length=1)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    description: str | None = None
    internal_reference: str | None = Field(
        default=None,
        description="Reference returned by an earlier attempt; makes the call idempotent",
    )


class InitiatePaymentResponse(BaseModel):
    """Schema for the outcome of an initiation."""

    intent_id: UUID
    internal_reference: str
    provider_status: str
    provider_message: str
    state: str
    external_reference: str | None = None
    resubmitted: bool = False
    instructions: dict[str, Any] | None = None

    @classmethod
    def from_result(cls, result: InitiationResult) -> InitiatePaymentResponse:
        return cls(
            intent_id=result.intent_id,
            internal_reference=result.internal_reference,
            provider_status=result.provider_status.value,
            provider_message=result.provider_message,
            state=result.state.value,
            external_reference=result.external_reference,
            resubmitted=result.resubmitted,
            instructions=asdict(result.instructions) if result.instructions else None,
        )


class IntentResponse(BaseModel):
    """Borrower-visible state of a payment intent."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    internal_reference: str
    provider: str
    channel: str
    state: str
    amount: Decimal
    confirmed_amount: Decimal | None = None
    currency: str
    loan_id: UUID | None = None
    external_reference: str | None = None
    provider_receipt: str | None = None
    result_description: str | None = None
    created_at: datetime
    confirmed_at: datetime | None = None
    late_settled_at: datetime | None = None


class IntentDetailResponse(IntentResponse):
    """Operator view of an intent, including stored provider metadata."""

    payer_account_ref: str | None = None
    account_reference: str | None = None
    result_code: str | None = None
    matched_by_heuristic: bool
    submission_metadata: dict[str, Any] | None = None
    confirmation_metadata: dict[str, Any] | None = None

    @field_validator("submission_metadata", "confirmation_metadata", mode="before")
    @classmethod
    def _load_metadata(cls, value: Any) -> Any:
        if isinstance(value, str):
            return load_metadata(value)
        return value


class IntentListResponse(BaseModel):
    intents: list[IntentDetailResponse]
    page: int
    limit: int
    total: int
    total_pages: int

    @classmethod
    def from_page(cls, page: IntentPage) -> IntentListResponse:
        return cls(
            intents=[IntentDetailResponse.model_validate(i) for i in page.intents],
            page=page.page,
            limit=page.limit,
            total=page.total,
            total_pages=page.total_pages,
        )


# ============================================================================
# Reconciliation outcomes
# ============================================================================


class OutcomeResponse(BaseModel):
    """What applying one event (or operator decision) did."""

    status: str
    provider: str
    external_reference: str
    intent_id: UUID | None = None
    internal_reference: str | None = None
    state: str | None = None
    loan_id: UUID | None = None
    amount: Decimal | None = None
    payment_id: UUID | None = None
    overpayment_amount: Decimal | None = None
    dead_letter_id: UUID | None = None
    unattributed_receipt_id: UUID | None = None
    reason: str | None = None
    flags: list[str] = []

    @classmethod
    def from_outcome(cls, outcome: ReconcileOutcome) -> OutcomeResponse:
        allocation = outcome.allocation
        return cls(
            status=outcome.status.value,
            provider=outcome.provider.value,
            external_reference=outcome.external_reference,
            intent_id=outcome.intent_id,
            internal_reference=outcome.internal_reference,
            state=outcome.state.value if outcome.state else None,
            loan_id=outcome.loan_id,
            amount=outcome.amount,
            payment_id=outcome.payment_id,
            overpayment_amount=allocation.overpayment_amount if allocation else None,
            dead_letter_id=outcome.dead_letter_id,
            unattributed_receipt_id=outcome.unattributed_receipt_id,
            reason=outcome.reason,
            flags=[flag.value for flag in outcome.flags],
        )


class PollResponse(BaseModel):
    """Result of an on-demand status query."""

    queried: bool
    outcome: OutcomeResponse | None = None


# ============================================================================
# Operator requests
# ============================================================================


class VerifyTransferRequest(BaseModel):
    """Reviewer confirms a bank transfer arrived."""

    bank_receipt_number: str | None = None
    amount: Decimal | None = Field(default=None, gt=0)


class RejectTransferRequest(BaseModel):
    """Reviewer decides a bank transfer never arrived."""

    reason: str = Field(min_length=1)


class RetryDeadLetterRequest(BaseModel):
    loan_id: UUID | None = None


class AttributeReceiptRequest(BaseModel):
    loan_id: UUID


class ReversePaymentRequest(BaseModel):
    reason: str = Field(min_length=1)


# ============================================================================
# Operator responses
# ============================================================================


class AllocationResponse(BaseModel):
    """Schema for money applied to a loan."""

    payment_id: UUID
    intent_id: UUID
    loan_id: UUID
    amount: Decimal
    penalty_amount: Decimal
    fees_amount: Decimal
    interest_amount: Decimal
    principal_amount: Decimal
    overpayment_amount: Decimal
    receipt_number: str
    loan_paid_off: bool

    @classmethod
    def from_result(cls, result: AllocationResult) -> AllocationResponse:
        return cls(
            payment_id=result.payment_id,
            intent_id=result.intent_id,
            loan_id=result.loan_id,
            amount=result.amount,
            penalty_amount=result.penalty_amount,
            fees_amount=result.fees_amount,
            interest_amount=result.interest_amount,
            principal_amount=result.principal_amount,
            overpayment_amount=result.overpayment_amount,
            receipt_number=result.receipt_number,
            loan_paid_off=result.loan_paid_off,
        )


class ReversalResponse(BaseModel):
    payment_id: UUID
    loan_id: UUID
    amount: Decimal
    overpayment_reversed: Decimal
    loan_reopened: bool

    @classmethod
    def from_result(cls, result: ReversalResult) -> ReversalResponse:
        return cls(
            payment_id=result.payment_id,
            loan_id=result.loan_id,
            amount=result.amount,
            overpayment_reversed=result.overpayment_reversed,
            loan_reopened=result.loan_reopened,
        )


class DeadLetterResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    intent_id: UUID
    amount: Decimal
    loan_id: UUID | None = None
    reason: str
    status: str
    attempts: int
    created_at: datetime


class UnattributedReceiptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider: str
    external_reference: str
    amount: Decimal | None = None
    currency: str | None = None
    payer_account_ref: str | None = None
    account_reference: str | None = None
    occurred_at: datetime | None = None
    status: str
    created_at: datetime


class UnallocatedResponse(BaseModel):
    """Confirmed money that has not reached a loan."""

    dead_letters: list[DeadLetterResponse]
    unattributed: list[UnattributedReceiptResponse]
    total: Decimal

    @classmethod
    def from_money(cls, money: UnallocatedMoney) -> UnallocatedResponse:
        return cls(
            dead_letters=[DeadLetterResponse.model_validate(dl) for dl in money.dead_letters],
            unattributed=[
                UnattributedReceiptResponse.model_validate(r) for r in money.unattributed
            ],
            total=money.total,
        )


class FlagResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    kind: str
    intent_id: UUID | None = None
    provider: str | None = None
    external_reference: str | None = None
    detail: str
    created_at: datetime


class ReportResponse(BaseModel):
    """Reconciliation report."""

    generated_at: datetime
    since: datetime | None = None
    intents_by_state: dict[str, int]
    late_settled: int
    confirmed_total: Decimal
    allocated_total: Decimal
    reversed_total: Decimal
    credit_total: Decimal
    flag_counts: dict[str, int]
    flags: list[FlagResponse]
    open_dead_letters: list[DeadLetterResponse]
    open_unattributed: list[UnattributedReceiptResponse]
    clean: bool

    @classmethod
    def from_report(cls, report: ReconciliationReport) -> ReportResponse:
        return cls(
            generated_at=report.generated_at,
            since=report.since,
            intents_by_state=report.intents_by_state,
            late_settled=report.late_settled,
            confirmed_total=report.confirmed_total,
            allocated_total=report.allocated_total,
            reversed_total=report.reversed_total,
            credit_total=report.credit_total,
            flag_counts=report.flag_counts,
            flags=[FlagResponse.model_validate(f) for f in report.flags],
            open_dead_letters=[
                DeadLetterResponse.model_validate(dl) for dl in report.open_dead_letters
            ],
            open_unattributed=[
                UnattributedReceiptResponse.model_validate(r) for r in report.open_unattributed
            ],
            clean=report.is_clean,
        )
