"""Loan payments facade - the single integration path.

Usage:
    payments = LoanPayments(session, config)

    # Start a repayment (validates, records PENDING, submits to the provider)
    result = payments.initiate(InitiationRequest(...))

    # Provider webhook (always acknowledged)
    result = payments.handle_callback(Provider.MPESA, payload)

    # Reviewer decisions on bank transfers
    payments.verify_manual(intent_id, reviewer_id="ops-1", bank_receipt_number="FT123")

    # Periodic sweep (poll, expire, report)
    report = payments.run_sweep()

The facade:
- Owns transaction boundaries: no transaction is open during a provider call
- Retries once when a concurrent writer trips a UNIQUE constraint
- Emits domain events only after the producing transaction commits
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Mapping, TypeVar
from uuid import UUID, uuid4

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from loan_engine.models import PaymentIntent
from loan_engine.models.base import utcnow
from loan_engine.payments.config import PaymentsConfig
from loan_engine.payments.errors import (
    AllocationError,
    IntentNotFoundError,
    ReconciliationConflict,
    ValidationError,
)
from loan_engine.payments.events import (
    AllocationDeadLettered,
    DomainEvent,
    EventBatch,
    EventEmitter,
    EventMetadata,
    LateConfirmationFlagged,
    PaymentConfirmed,
    PaymentFailed,
    PaymentIntentCreated,
    PaymentReversed,
    ReconciliationConflictDetected,
    UnattributedPaymentParked,
)
from loan_engine.payments.model import (
    InitiationRequest,
    InitiationResult,
    IntentState,
    Provider,
    ProviderEvent,
    ProviderStatus,
)
from loan_engine.payments.providers import BankTransferProvider, build_providers
from loan_engine.payments.providers.base import Clock, PaymentChannelProvider, SubmitResult
from loan_engine.payments.services.allocation import (
    AllocationEngine,
    AllocationResult,
    LoanBalance,
    ReversalResult,
)
from loan_engine.payments.services.initiation import InitiationService, PreparedInitiation
from loan_engine.payments.services.ledger import IntentPage, LedgerService
from loan_engine.payments.services.reconciliation import (
    ReconcileOutcome,
    ReconcileStatus,
    ReconciliationEngine,
    ReconciliationReport,
    UnallocatedMoney,
)
from loan_engine.payments.services.sweep import SweepReport, SweepService

logger = logging.getLogger(__name__)

T = TypeVar("T")
E = TypeVar("E", bound=Enum)


class CallbackStatus(str, Enum):
    """Result of handle_callback."""

    PROCESSED = "processed"  # Event changed the ledger
    DUPLICATE = "duplicate"  # Already applied (idempotent)
    CONFLICT = "conflict"  # Contradicts a terminal state; flagged
    IGNORED = "ignored"  # Unparseable, still pending, or unmatched failure
    ERROR = "error"  # Processing failed and was rolled back


@dataclass
class CallbackResult:
    """Result of handling a provider webhook."""

    status: CallbackStatus
    acknowledgement: dict[str, Any]
    correlation_id: UUID
    outcome: ReconcileOutcome | None = None
    error: str | None = None


_CALLBACK_STATUS = {
    ReconcileStatus.APPLIED: CallbackStatus.PROCESSED,
    ReconcileStatus.LATE_SETTLED: CallbackStatus.PROCESSED,
    ReconcileStatus.HEURISTIC_MATCHED: CallbackStatus.PROCESSED,
    ReconcileStatus.UNATTRIBUTED: CallbackStatus.PROCESSED,
    ReconcileStatus.DUPLICATE: CallbackStatus.DUPLICATE,
    ReconcileStatus.CONFLICT: CallbackStatus.CONFLICT,
    ReconcileStatus.IGNORED: CallbackStatus.IGNORED,
    ReconcileStatus.PENDING: CallbackStatus.IGNORED,
}


@dataclass
class _Actor:
    actor_id: str | None = None
    actor_type: str = "system"
    correlation_id: UUID = field(default_factory=uuid4)


class LoanPayments:
    """Synchronous loan payments facade.

    One instance per unit of work (request, CLI command, sweep run); it
    commits on the session it is given.
    """

    def __init__(
        self,
        session: Session,
        config: PaymentsConfig,
        providers: Mapping[Provider, PaymentChannelProvider] | None = None,
        event_emitter: EventEmitter | None = None,
        clock: Clock = utcnow,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._session = session
        self._config = config
        self._clock = clock
        self._owns_providers = providers is None
        self._providers = dict(providers) if providers is not None else build_providers(
            config, http_client, clock
        )
        self._emitter = event_emitter if config.emit_events else None

        # Wire up services
        self._ledger = LedgerService(session, clock)
        self._allocation = AllocationEngine(session, clock)
        self._reconciliation = ReconciliationEngine(
            session, self._ledger, self._allocation, config.reconciliation, clock
        )
        self._initiation = InitiationService(session, self._ledger, self._providers, clock)

    @property
    def providers(self) -> dict[Provider, PaymentChannelProvider]:
        return self._providers

    def close(self) -> None:
        if self._owns_providers:
            for adapter in self._providers.values():
                adapter.close()

    # -------------------------------------------------------------------------
    # Transaction and event plumbing
    # -------------------------------------------------------------------------

    def _transact(self, operation: Callable[[], T]) -> T:
        """Run ``operation`` and commit, retrying once on a UNIQUE violation."""
        for attempt in (1, 2):
            try:
                result = operation()
                self._session.commit()
                return result
            except IntegrityError:
                self._session.rollback()
                if attempt == 2:
                    raise
                logger.info("Concurrent write detected; re-applying once")
            except Exception:
                self._session.rollback()
                raise
        raise AssertionError("unreachable")

    def _batch(self) -> EventBatch:
        return (self._emitter or EventEmitter()).batch()

    def _metadata(self, actor: _Actor) -> EventMetadata:
        return EventMetadata.create(
            correlation_id=actor.correlation_id,
            actor_id=actor.actor_id,
            actor_type=actor.actor_type,
            timestamp=self._clock(),
        )

    def _events_for(self, outcome: ReconcileOutcome, actor: _Actor) -> list[DomainEvent]:
        events: list[DomainEvent] = []
        allocation = outcome.allocation

        if outcome.status is ReconcileStatus.LATE_SETTLED and outcome.intent_id is not None:
            events.append(LateConfirmationFlagged(
                metadata=self._metadata(actor),
                intent_id=outcome.intent_id,
                internal_reference=outcome.internal_reference or "",
                provider=outcome.provider.value,
                amount=outcome.amount or Decimal("0"),
            ))

        if allocation is not None:
            events.append(PaymentConfirmed(
                metadata=self._metadata(actor),
                loan_id=allocation.loan_id,
                payment_id=allocation.payment_id,
                amount=allocation.amount,
                intent_id=allocation.intent_id,
                provider=outcome.provider.value,
                receipt_number=allocation.receipt_number,
                overpayment_amount=allocation.overpayment_amount,
                loan_paid_off=allocation.loan_paid_off,
                late=outcome.status is ReconcileStatus.LATE_SETTLED,
            ))

        if outcome.dead_letter_id is not None and outcome.intent_id is not None:
            events.append(AllocationDeadLettered(
                metadata=self._metadata(actor),
                intent_id=outcome.intent_id,
                dead_letter_id=outcome.dead_letter_id,
                reason=outcome.reason or "",
                amount=outcome.amount or Decimal("0"),
                loan_id=outcome.loan_id,
            ))

        if (
            outcome.status is ReconcileStatus.APPLIED
            and outcome.state is IntentState.FAILED
            and outcome.intent_id is not None
        ):
            events.append(PaymentFailed(
                metadata=self._metadata(actor),
                intent_id=outcome.intent_id,
                reason=outcome.reason or "Payment failed",
                internal_reference=outcome.internal_reference or "",
                provider=outcome.provider.value,
                loan_id=outcome.loan_id,
            ))

        if not outcome.first_delivery:
            return events

        if outcome.status is ReconcileStatus.UNATTRIBUTED and outcome.unattributed_receipt_id:
            events.append(UnattributedPaymentParked(
                metadata=self._metadata(actor),
                receipt_id=outcome.unattributed_receipt_id,
                provider=outcome.provider.value,
                external_reference=outcome.external_reference,
                amount=outcome.amount,
            ))
        elif outcome.status is ReconcileStatus.CONFLICT and outcome.intent_id is not None:
            events.append(ReconciliationConflictDetected(
                metadata=self._metadata(actor),
                intent_id=outcome.intent_id,
                provider=outcome.provider.value,
                external_reference=outcome.external_reference,
                detail=outcome.reason or "",
            ))
        return events

    # -------------------------------------------------------------------------
    # Initiation
    # -------------------------------------------------------------------------

    def initiate(self, request: InitiationRequest) -> InitiationResult:
        """Start a repayment through a provider.

        The PENDING intent is committed before the provider is called, so a
        transport failure leaves a retryable intent behind.

        Raises:
            ValidationError: Bad input; nothing written
            ProviderError: Provider unreachable; intent stays PENDING and the
                error carries its internal reference for the retry
        """
        actor = _Actor(actor_type="borrower")
        prepared = self._transact(lambda: self._initiation.prepare(request))

        if prepared.created and self._emitter is not None:
            self._emitter.emit(PaymentIntentCreated(
                metadata=self._metadata(actor),
                intent_id=prepared.intent_id,
                internal_reference=prepared.internal_reference,
                provider=prepared.provider.value,
                loan_id=request.loan_id,
                amount=prepared.submission.amount,
                currency=prepared.submission.currency,
            ))

        if not prepared.needs_submit:
            return self._initiation.current(prepared)

        submit_result = self._initiation.submit(prepared)

        with self._batch() as batch:
            result, parked = self._transact(lambda: self._record(prepared, submit_result))
            if parked is not None:
                batch.extend(self._events_for(parked, actor))
            if result.provider_status is ProviderStatus.REJECTED and result.state is IntentState.FAILED:
                batch.add(PaymentFailed(
                    metadata=self._metadata(actor),
                    intent_id=result.intent_id,
                    reason=result.provider_message or "Rejected by provider",
                    internal_reference=result.internal_reference,
                    provider=prepared.provider.value,
                    loan_id=request.loan_id,
                ))
        return result

    def _record(
        self,
        prepared: PreparedInitiation,
        submit_result: SubmitResult,
    ) -> tuple[InitiationResult, ReconcileOutcome | None]:
        result = self._initiation.record(prepared, submit_result)
        if result.state is not IntentState.PENDING or result.external_reference is None:
            return result, None
        outcome = self._reconciliation.reclaim_parked(
            result.intent_id, self._initiation.adapter(prepared.provider)
        )
        if outcome is None or outcome.state is None:
            return result, outcome
        return replace(result, state=outcome.state), outcome

    def get_intent(self, internal_reference: str) -> PaymentIntent:
        """
        Raises:
            IntentNotFoundError: Unknown reference
        """
        intent = self._ledger.find_by_internal_reference(internal_reference)
        if intent is None:
            raise IntentNotFoundError(internal_reference)
        return intent

    def poll_intent(self, internal_reference: str) -> ReconcileOutcome | None:
        """Ask the provider for an intent's status now.

        Returns None when there is nothing to ask (terminal, not yet
        acknowledged, or a channel without status queries).

        Raises:
            IntentNotFoundError: Unknown reference
            ProviderError: Provider unreachable
        """
        intent = self.get_intent(internal_reference)
        if IntentState(intent.state).is_terminal or intent.external_reference is None:
            return None
        adapter = self._initiation.adapter(intent.provider)
        external_reference = intent.external_reference
        # No transaction open across the network call
        self._session.commit()

        event = adapter.poll(external_reference)
        if event is None:
            return None
        return self.apply_event(event)

    # -------------------------------------------------------------------------
    # Inbound events
    # -------------------------------------------------------------------------

    def handle_callback(self, provider: Provider | str, payload: Any) -> CallbackResult:
        """Handle a provider webhook.

        Always returns the provider-native acknowledgement: unparseable
        payloads and processing failures are logged, never surfaced to the
        provider.
        """
        correlation_id = uuid4()
        try:
            adapter = self._initiation.adapter(provider)
        except ValidationError as exc:
            logger.warning("Callback for unavailable provider %s: %s", provider, exc.message)
            return CallbackResult(
                status=CallbackStatus.IGNORED,
                acknowledgement={},
                correlation_id=correlation_id,
                error=exc.message,
            )
        ack = adapter.acknowledgement()

        event = adapter.parse_callback(payload)
        if event is None:
            return CallbackResult(
                status=CallbackStatus.IGNORED,
                acknowledgement=ack,
                correlation_id=correlation_id,
            )

        try:
            outcome = self.apply_event(event, _Actor(actor_type="webhook", correlation_id=correlation_id))
        except Exception as exc:
            logger.exception(
                "Failed to process %s callback for %s",
                event.provider.value,
                event.external_reference,
                extra={
                    "provider": event.provider.value,
                    "external_reference": event.external_reference,
                },
            )
            return CallbackResult(
                status=CallbackStatus.ERROR,
                acknowledgement=ack,
                correlation_id=correlation_id,
                error=str(exc),
            )

        return CallbackResult(
            status=_CALLBACK_STATUS[outcome.status],
            acknowledgement=ack,
            correlation_id=correlation_id,
            outcome=outcome,
        )

    def apply_event(self, event: ProviderEvent, actor: _Actor | None = None) -> ReconcileOutcome:
        """Apply one canonical provider event in its own transaction."""
        actor = actor or _Actor(actor_id=event.actor_id)
        with self._batch() as batch:
            outcome = self._transact(lambda: self._reconciliation.apply_event(event))
            batch.extend(self._events_for(outcome, actor))
        return outcome

    # -------------------------------------------------------------------------
    # Manual review
    # -------------------------------------------------------------------------

    def _bank_adapter(self) -> BankTransferProvider:
        adapter = self._initiation.adapter(Provider.BANK)
        if not isinstance(adapter, BankTransferProvider):
            raise TypeError(f"BANK adapter must be a BankTransferProvider, got {type(adapter).__name__}")
        return adapter

    def _pending_bank_intent(self, intent_id: UUID) -> PaymentIntent:
        intent = self._ledger.get(intent_id)
        if intent.provider != Provider.BANK.value:
            raise ValidationError(
                f"Intent {intent.internal_reference} is not a bank transfer",
                field="intent_id",
            )
        if IntentState(intent.state).is_terminal:
            raise ReconciliationConflict(
                f"Intent {intent.internal_reference} is already {intent.state}",
                intent_id=intent.id,
                state=intent.state,
            )
        return intent

    def _review(self, event: ProviderEvent, reviewer_id: str) -> ReconcileOutcome:
        outcome = self.apply_event(event, _Actor(actor_id=reviewer_id, actor_type="operator"))
        if outcome.status in (ReconcileStatus.DUPLICATE, ReconcileStatus.CONFLICT):
            raise ReconciliationConflict(
                f"Intent {outcome.internal_reference} was already decided ({outcome.state})",
                intent_id=outcome.intent_id,
                state=outcome.state.value if outcome.state else None,
            )
        return outcome

    def verify_manual(
        self,
        intent_id: UUID,
        reviewer_id: str,
        bank_receipt_number: str | None = None,
        amount: Decimal | None = None,
    ) -> ReconcileOutcome:
        """Reviewer confirms a bank transfer arrived.

        Raises:
            IntentNotFoundError: Unknown intent
            ValidationError: Not a bank transfer, or bad reviewer input
            ReconciliationConflict: Intent already terminal
        """
        intent = self._pending_bank_intent(intent_id)
        event = self._bank_adapter().verify(
            intent.external_reference or intent.internal_reference,
            reviewer_id,
            bank_receipt_number=bank_receipt_number,
            amount=amount,
        )
        return self._review(event, reviewer_id)

    def reject_manual(self, intent_id: UUID, reviewer_id: str, reason: str) -> ReconcileOutcome:
        """Reviewer decides a bank transfer never arrived.

        Raises:
            IntentNotFoundError: Unknown intent
            ValidationError: Not a bank transfer, or missing reason
            ReconciliationConflict: Intent already terminal
        """
        intent = self._pending_bank_intent(intent_id)
        event = self._bank_adapter().reject(
            intent.external_reference or intent.internal_reference,
            reviewer_id,
            reason,
        )
        return self._review(event, reviewer_id)

    def attribute_receipt(self, receipt_id: UUID, loan_id: UUID, operator_id: str) -> ReconcileOutcome:
        actor = _Actor(actor_id=operator_id, actor_type="operator")
        with self._batch() as batch:
            outcome = self._transact(
                lambda: self._reconciliation.attribute_receipt(receipt_id, loan_id, operator_id)
            )
            batch.extend(self._events_for(outcome, actor))
        return outcome

    def retry_dead_letter(
        self,
        dead_letter_id: UUID,
        operator_id: str,
        loan_id: UUID | None = None,
    ) -> AllocationResult:
        """Re-run a failed allocation, optionally binding a loan first.

        Raises:
            NotFoundError: Unknown dead letter or loan
            ReconciliationConflict: Already resolved
            AllocationError: Still cannot allocate; the attempt is recorded
        """
        if not operator_id:
            raise ValidationError("operator_id is required", field="operator_id")
        actor = _Actor(actor_id=operator_id, actor_type="operator")
        try:
            result = self._reconciliation.retry_dead_letter(dead_letter_id, operator_id, loan_id)
        except AllocationError:
            # Keep the recorded attempt
            self._session.commit()
            raise
        except Exception:
            self._session.rollback()
            raise
        self._session.commit()

        if self._emitter is not None:
            intent = self._ledger.get(result.intent_id)
            self._emitter.emit(PaymentConfirmed(
                metadata=self._metadata(actor),
                loan_id=result.loan_id,
                payment_id=result.payment_id,
                amount=result.amount,
                intent_id=result.intent_id,
                provider=intent.provider,
                receipt_number=result.receipt_number,
                overpayment_amount=result.overpayment_amount,
                loan_paid_off=result.loan_paid_off,
                late=intent.late_settled_at is not None,
            ))
        return result

    def reverse_payment(self, payment_id: UUID, reversed_by: str, reason: str) -> ReversalResult:
        """
        Raises:
            NotFoundError: Unknown payment
            ReversalError: Already reversed or schedule changed underneath
        """
        if not reversed_by:
            raise ValidationError("reversed_by is required", field="reversed_by")
        if not reason or not reason.strip():
            raise ValidationError("A reversal reason is required", field="reason")

        actor = _Actor(actor_id=reversed_by, actor_type="operator")
        with self._batch() as batch:
            result = self._transact(
                lambda: self._allocation.reverse(payment_id, reversed_by, reason.strip())
            )
            batch.add(PaymentReversed(
                metadata=self._metadata(actor),
                payment_id=result.payment_id,
                loan_id=result.loan_id,
                amount=result.amount,
                reversed_by=reversed_by,
                reason=reason.strip(),
                loan_reopened=result.loan_reopened,
            ))
        return result

    # -------------------------------------------------------------------------
    # Reporting and sweep
    # -------------------------------------------------------------------------

    def list_intents(
        self,
        provider: Provider | str | None = None,
        state: IntentState | str | None = None,
        loan_id: UUID | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> IntentPage:
        """Operator view of intents, newest first.

        Raises:
            ValidationError: Unknown provider or state, or bad page bounds
        """
        return self._ledger.list_intents(
            provider=_parse(Provider, provider, "provider"),
            state=_parse(IntentState, state, "state"),
            loan_id=loan_id,
            page=page,
            limit=limit,
        )

    def list_unallocated(self) -> UnallocatedMoney:
        return self._reconciliation.list_unallocated()

    def reconciliation_report(self, since: datetime | None = None) -> ReconciliationReport:
        return self._reconciliation.build_report(since)

    def loan_balance(self, loan_id: UUID) -> LoanBalance:
        return self._allocation.loan_balance(loan_id)

    def run_sweep(self, now: datetime | None = None) -> SweepReport:
        sweep = SweepService(
            self._session,
            self._ledger,
            self._providers,
            apply_event=lambda event: self.apply_event(event, _Actor(actor_type="scheduler")),
            config=self._config.sweep,
            event_emitter=self._emitter,
            clock=self._clock,
        )
        return sweep.run_once(now)


def _parse(enum_type: type[E], value: E | str | None, field_name: str) -> E | None:
    if value is None or isinstance(value, enum_type):
        return value
    try:
        return enum_type(value.upper())
    except ValueError:
        raise ValidationError(f"Unknown {field_name} {value!r}", field=field_name) from None
