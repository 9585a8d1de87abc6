"""Payment services: ledger, reconciliation, allocation, initiation, sweep."""

from loan_engine.payments.services.allocation import (
    AllocationEngine,
    AllocationPlan,
    AllocationResult,
    LineAllocation,
    LineBalance,
    LoanBalance,
    ReversalResult,
    plan_waterfall,
)
from loan_engine.payments.services.initiation import InitiationService, PreparedInitiation
from loan_engine.payments.services.ledger import LedgerService, TransitionResult
from loan_engine.payments.services.reconciliation import (
    FlagKind,
    ReconcileOutcome,
    ReconcileStatus,
    ReconciliationEngine,
    ReconciliationReport,
    UnallocatedMoney,
)
from loan_engine.payments.services.state_machine import IntentStateMachine, InvalidTransitionError
from loan_engine.payments.services.sweep import SweepReport, SweepRunner, SweepService

__all__ = [
    "AllocationEngine",
    "AllocationPlan",
    "AllocationResult",
    "FlagKind",
    "InitiationService",
    "IntentStateMachine",
    "InvalidTransitionError",
    "LedgerService",
    "LineAllocation",
    "LineBalance",
    "LoanBalance",
    "PreparedInitiation",
    "ReconcileOutcome",
    "ReconcileStatus",
    "ReconciliationEngine",
    "ReconciliationReport",
    "ReversalResult",
    "SweepReport",
    "SweepRunner",
    "SweepService",
    "TransitionResult",
    "UnallocatedMoney",
    "plan_waterfall",
]
