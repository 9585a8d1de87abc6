"""Loan payment domain events package."""

from loan_engine.payments.events.emitter import EventBatch, EventEmitter, EventHandler
from loan_engine.payments.events.types import (
    AllocationDeadLettered,
    DomainEvent,
    EventCategory,
    EventMetadata,
    LateConfirmationFlagged,
    PaymentConfirmed,
    PaymentFailed,
    PaymentIntentCreated,
    PaymentIntentExpired,
    PaymentReversed,
    ReconciliationConflictDetected,
    UnattributedPaymentParked,
)

__all__ = [
    # Base
    "DomainEvent",
    "EventMetadata",
    "EventCategory",
    # Payment Events
    "PaymentIntentCreated",
    "PaymentConfirmed",
    "PaymentFailed",
    "PaymentIntentExpired",
    # Allocation Events
    "AllocationDeadLettered",
    "PaymentReversed",
    # Reconciliation Events
    "LateConfirmationFlagged",
    "UnattributedPaymentParked",
    "ReconciliationConflictDetected",
    # Emitter
    "EventEmitter",
    "EventBatch",
    "EventHandler",
]
