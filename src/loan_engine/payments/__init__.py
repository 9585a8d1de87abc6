"""Loan repayment collection, reconciliation and allocation.

Public entry point is LoanPayments; everything else is exported for typing
and for tests.
"""

from loan_engine.payments.config import (
    AirtelConfig,
    BankTransferConfig,
    MpesaConfig,
    PaymentsConfig,
    ReconciliationConfig,
    SweepConfig,
    build_payments_config,
    create_sandbox_config,
    validate_production_config,
)
from loan_engine.payments.errors import (
    AllocationError,
    IntentNotFoundError,
    NotFoundError,
    PaymentsError,
    ProviderError,
    ReconciliationConflict,
    ReversalError,
    ValidationError,
)
from loan_engine.payments.facade import CallbackResult, CallbackStatus, LoanPayments
from loan_engine.payments.model import (
    Channel,
    EventSource,
    EventStatus,
    InitiationRequest,
    InitiationResult,
    IntentState,
    Provider,
    ProviderEvent,
    ProviderStatus,
)

__all__ = [
    # Facade
    "LoanPayments",
    "CallbackResult",
    "CallbackStatus",
    # Config
    "AirtelConfig",
    "BankTransferConfig",
    "MpesaConfig",
    "PaymentsConfig",
    "ReconciliationConfig",
    "SweepConfig",
    "build_payments_config",
    "create_sandbox_config",
    "validate_production_config",
    # Errors
    "AllocationError",
    "IntentNotFoundError",
    "NotFoundError",
    "PaymentsError",
    "ProviderError",
    "ReconciliationConflict",
    "ReversalError",
    "ValidationError",
    # Model
    "Channel",
    "EventSource",
    "EventStatus",
    "InitiationRequest",
    "InitiationResult",
    "IntentState",
    "Provider",
    "ProviderEvent",
    "ProviderStatus",
]
