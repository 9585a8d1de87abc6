"""ORM models for the loan engine."""

from loan_engine.models.base import Base, TimestampMixin, UTCDateTime, utcnow
from loan_engine.models.loans import Loan, LoanScheduleLine
from loan_engine.models.payments import (
    AllocationDeadLetter,
    OverpaymentCredit,
    Payment,
    PaymentAllocation,
    PaymentIntent,
    ProviderEventRecord,
    ReconciliationFlag,
    UnattributedReceipt,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "utcnow",
    "Loan",
    "LoanScheduleLine",
    "AllocationDeadLetter",
    "OverpaymentCredit",
    "Payment",
    "PaymentAllocation",
    "PaymentIntent",
    "ProviderEventRecord",
    "ReconciliationFlag",
    "UnattributedReceipt",
]
