"""Outbound domain events for loan payments.

All events are immutable (frozen dataclasses), carry explicit payloads and
are serializable for handlers that forward them elsewhere (notifications,
accounting, audit). They are only ever emitted after the transaction that
produced them has committed.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from loan_engine.models.base import utcnow


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    PAYMENT = "payment"
    ALLOCATION = "allocation"
    RECONCILIATION = "reconciliation"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every domain event."""

    event_id: UUID
    timestamp: datetime
    correlation_id: UUID  # Links events from one operation
    actor_id: str | None  # Operator, or None for the system
    actor_type: str  # 'operator', 'system', 'scheduler', 'webhook'
    source_service: str
    version: int = 1

    @classmethod
    def create(
        cls,
        correlation_id: UUID | None = None,
        actor_id: str | None = None,
        actor_type: str = "system",
        source_service: str = "loan-payments",
        timestamp: datetime | None = None,
    ) -> EventMetadata:
        return cls(
            event_id=uuid4(),
            timestamp=timestamp or utcnow(),
            correlation_id=correlation_id or uuid4(),
            actor_id=actor_id,
            actor_type=actor_type,
            source_service=source_service,
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        raise NotImplementedError("Subclasses must define category")

    def to_dict(self) -> dict[str, Any]:
        data = _serialize(asdict(self))
        data["event_type"] = self.event_type
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


def _serialize(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_serialize(v) for v in obj]
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    return obj


# =============================================================================
# Payment Events
# =============================================================================


@dataclass(frozen=True)
class PaymentIntentCreated(DomainEvent):
    """A repayment was initiated and recorded PENDING."""

    intent_id: UUID
    internal_reference: str
    provider: str
    loan_id: UUID | None
    amount: Decimal
    currency: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYMENT


@dataclass(frozen=True)
class PaymentConfirmed(DomainEvent):
    """Money was confirmed and applied to a loan."""

    loan_id: UUID
    payment_id: UUID
    amount: Decimal
    intent_id: UUID
    provider: str
    receipt_number: str
    overpayment_amount: Decimal
    loan_paid_off: bool
    late: bool = False

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYMENT


@dataclass(frozen=True)
class PaymentFailed(DomainEvent):
    """Provider or reviewer reported the payment did not happen."""

    intent_id: UUID
    reason: str
    internal_reference: str
    provider: str
    loan_id: UUID | None = None

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYMENT


@dataclass(frozen=True)
class PaymentIntentExpired(DomainEvent):
    """No confirmation arrived within the provider's timeout."""

    intent_id: UUID
    internal_reference: str
    provider: str
    loan_id: UUID | None = None

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYMENT


# =============================================================================
# Allocation Events
# =============================================================================


@dataclass(frozen=True)
class AllocationDeadLettered(DomainEvent):
    """Confirmed money could not be allocated and awaits an operator."""

    intent_id: UUID
    dead_letter_id: UUID
    reason: str
    amount: Decimal
    loan_id: UUID | None = None

    @property
    def category(self) -> EventCategory:
        return EventCategory.ALLOCATION


@dataclass(frozen=True)
class PaymentReversed(DomainEvent):
    """A payment's allocation was undone."""

    payment_id: UUID
    loan_id: UUID
    amount: Decimal
    reversed_by: str
    reason: str
    loan_reopened: bool

    @property
    def category(self) -> EventCategory:
        return EventCategory.ALLOCATION


# =============================================================================
# Reconciliation Events
# =============================================================================


@dataclass(frozen=True)
class LateConfirmationFlagged(DomainEvent):
    """Provider confirmed an intent after the sweep expired it."""

    intent_id: UUID
    internal_reference: str
    provider: str
    amount: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.RECONCILIATION


@dataclass(frozen=True)
class UnattributedPaymentParked(DomainEvent):
    """Inbound money matched no intent and no loan."""

    receipt_id: UUID
    provider: str
    external_reference: str
    amount: Decimal | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.RECONCILIATION


@dataclass(frozen=True)
class ReconciliationConflictDetected(DomainEvent):
    """A provider event contradicted an intent's terminal state."""

    intent_id: UUID
    provider: str
    external_reference: str
    detail: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.RECONCILIATION
