"""Error taxonomy for payment handling.

Provider-facing entry points never let these escape as HTTP failures;
operator-facing entry points surface them with full detail.
"""

from __future__ import annotations

from typing import Any


class PaymentsError(Exception):
    """Base class for payment handling errors."""

    code = "PAYMENTS_ERROR"

    def __init__(self, message: str, **details: Any) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "detail": self.message,
            **{k: str(v) for k, v in self.details.items() if v is not None},
        }


class ValidationError(PaymentsError):
    """Bad initiation or operator input. Nothing was written."""

    code = "VALIDATION_ERROR"


class NotFoundError(PaymentsError):
    """An operator referenced an unknown intent, payment or receipt."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, identifier: Any) -> None:
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} '{identifier}' not found", entity=entity)


class ProviderError(PaymentsError):
    """Provider unreachable or answered with something unusable.

    The intent (if any) stays PENDING; initiation may be retried with the
    same internal reference.
    """

    code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        internal_reference: str | None = None,
        retryable: bool = True,
    ) -> None:
        self.provider = provider
        self.internal_reference = internal_reference
        self.retryable = retryable
        super().__init__(
            message,
            provider=provider,
            internal_reference=internal_reference,
        )


class ReconciliationConflict(PaymentsError):
    """A request contradicts an intent's terminal state.

    Raised only towards operators. Provider events that conflict are
    recorded as flags and acknowledged instead.
    """

    code = "RECONCILIATION_CONFLICT"

    def __init__(self, message: str, intent_id: Any = None, state: str | None = None) -> None:
        self.intent_id = intent_id
        self.state = state
        super().__init__(message, intent_id=intent_id, state=state)


class AllocationError(PaymentsError):
    """Loan or schedule cannot take the money right now.

    Raised before any schedule mutation; the intent stays CONFIRMED and the
    allocation is parked in the dead-letter queue.
    """

    code = "ALLOCATION_ERROR"


class ReversalError(AllocationError):
    """Payment cannot be reversed (already reversed or lines changed)."""

    code = "REVERSAL_ERROR"


class IntentNotFoundError(NotFoundError):
    """No payment intent with the given id or reference."""

    def __init__(self, identifier: Any) -> None:
        super().__init__("PaymentIntent", identifier)
