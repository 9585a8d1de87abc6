"""Operator endpoints: bank transfer review, unallocated money and reversals.

Errors are surfaced with full detail (400, 404, 409, 502 with ``code``).
"""

from datetime import datetime
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query

from loan_engine.api.dependencies import OperatorId, Payments
from loan_engine.api.schemas import (
    AllocationResponse,
    AttributeReceiptRequest,
    ErrorResponse,
    IntentListResponse,
    OutcomeResponse,
    RejectTransferRequest,
    ReportResponse,
    RetryDeadLetterRequest,
    ReversalResponse,
    ReversePaymentRequest,
    UnallocatedResponse,
    VerifyTransferRequest,
)

router = APIRouter(prefix="/review", tags=["review"])

ERRORS = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


# ============================================================================
# Bank transfers
# ============================================================================


@router.post(
    "/intents/{intent_id}/verify",
    response_model=OutcomeResponse,
    responses=ERRORS,
)
def verify_transfer(
    payments: Payments,
    operator_id: OperatorId,
    intent_id: Annotated[UUID, Path()],
    payload: VerifyTransferRequest,
) -> OutcomeResponse:
    """Confirm a bank transfer arrived; the money is allocated immediately."""
    outcome = payments.verify_manual(
        intent_id,
        reviewer_id=operator_id,
        bank_receipt_number=payload.bank_receipt_number,
        amount=payload.amount,
    )
    return OutcomeResponse.from_outcome(outcome)


@router.post(
    "/intents/{intent_id}/reject",
    response_model=OutcomeResponse,
    responses=ERRORS,
)
def reject_transfer(
    payments: Payments,
    operator_id: OperatorId,
    intent_id: Annotated[UUID, Path()],
    payload: RejectTransferRequest,
) -> OutcomeResponse:
    """Decide a bank transfer never arrived."""
    outcome = payments.reject_manual(intent_id, reviewer_id=operator_id, reason=payload.reason)
    return OutcomeResponse.from_outcome(outcome)


# ============================================================================
# Intent listing
# ============================================================================


@router.get("/intents", response_model=IntentListResponse, responses={400: {"model": ErrorResponse}})
def list_intents(
    payments: Payments,
    provider: Annotated[str | None, Query()] = None,
    state: Annotated[str | None, Query()] = None,
    loan_id: Annotated[UUID | None, Query()] = None,
    page: Annotated[int, Query()] = 1,
    limit: Annotated[int, Query()] = 20,
) -> IntentListResponse:
    """Payment intents newest first, filtered by provider, state and loan."""
    return IntentListResponse.from_page(
        payments.list_intents(provider=provider, state=state, loan_id=loan_id, page=page, limit=limit)
    )


# ============================================================================
# Unallocated money
# ============================================================================


@router.get("/unallocated", response_model=UnallocatedResponse)
def list_unallocated(payments: Payments) -> UnallocatedResponse:
    """Dead-lettered allocations and unattributed receipts awaiting action."""
    return UnallocatedResponse.from_money(payments.list_unallocated())


@router.post(
    "/dead-letters/{dead_letter_id}/retry",
    response_model=AllocationResponse,
    responses=ERRORS,
)
def retry_dead_letter(
    payments: Payments,
    operator_id: OperatorId,
    dead_letter_id: Annotated[UUID, Path()],
    payload: RetryDeadLetterRequest,
) -> AllocationResponse:
    """Re-run a failed allocation, optionally against a different loan."""
    result = payments.retry_dead_letter(dead_letter_id, operator_id, loan_id=payload.loan_id)
    return AllocationResponse.from_result(result)


@router.post(
    "/unattributed/{receipt_id}/attribute",
    response_model=OutcomeResponse,
    responses=ERRORS,
)
def attribute_receipt(
    payments: Payments,
    operator_id: OperatorId,
    receipt_id: Annotated[UUID, Path()],
    payload: AttributeReceiptRequest,
) -> OutcomeResponse:
    """Assign parked money to a loan and allocate it."""
    outcome = payments.attribute_receipt(receipt_id, payload.loan_id, operator_id)
    return OutcomeResponse.from_outcome(outcome)


# ============================================================================
# Reversals and reporting
# ============================================================================


@router.post(
    "/payments/{payment_id}/reverse",
    response_model=ReversalResponse,
    responses=ERRORS,
)
def reverse_payment(
    payments: Payments,
    operator_id: OperatorId,
    payment_id: Annotated[UUID, Path()],
    payload: ReversePaymentRequest,
) -> ReversalResponse:
    result = payments.reverse_payment(payment_id, reversed_by=operator_id, reason=payload.reason)
    return ReversalResponse.from_result(result)


@router.get("/report", response_model=ReportResponse)
def reconciliation_report(
    payments: Payments,
    since: Annotated[datetime | None, Query()] = None,
) -> ReportResponse:
    """Reconciliation report, optionally limited to recent activity."""
    return ReportResponse.from_report(payments.reconciliation_report(since))
