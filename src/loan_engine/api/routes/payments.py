"""Borrower-facing repayment endpoints."""

from typing import Annotated

from fastapi import APIRouter, Path, status

from loan_engine.api.dependencies import Payments
from loan_engine.api.schemas import (
    ErrorResponse,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    IntentResponse,
    OutcomeResponse,
    PollResponse,
)
from loan_engine.payments.errors import ValidationError
from loan_engine.payments.model import InitiationRequest, Provider

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post(
    "",
    response_model=InitiatePaymentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
def initiate_payment(
    payments: Payments,
    payload: InitiatePaymentRequest,
) -> InitiatePaymentResponse:
    """Start a repayment through a provider.

    A 502 means the provider could not be reached; the body carries the
    internal reference to retry with.
    """
    try:
        provider = Provider(payload.provider.upper())
    except ValueError:
        raise ValidationError(f"Unknown provider: {payload.provider!r}", field="provider") from None

    result = payments.initiate(
        InitiationRequest(
            provider=provider,
            loan_id=payload.loan_id,
            amount=payload.amount,
            payer_account_ref=payload.payer_account_ref,
            currency=payload.currency,
            description=payload.description,
            internal_reference=payload.internal_reference,
        )
    )
    return InitiatePaymentResponse.from_result(result)


@router.get(
    "/{internal_reference}",
    response_model=IntentResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_payment(
    payments: Payments,
    internal_reference: Annotated[str, Path()],
) -> IntentResponse:
    """Current state of a repayment."""
    return IntentResponse.model_validate(payments.get_intent(internal_reference))


@router.post(
    "/{internal_reference}/poll",
    response_model=PollResponse,
    responses={
        404: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
def poll_payment(
    payments: Payments,
    internal_reference: Annotated[str, Path()],
) -> PollResponse:
    """Ask the provider for the status now instead of waiting for the sweep."""
    outcome = payments.poll_intent(internal_reference)
    if outcome is None:
        return PollResponse(queried=False)
    return PollResponse(queried=True, outcome=OutcomeResponse.from_outcome(outcome))
