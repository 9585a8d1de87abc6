"""Reconciliation engine - turns provider events into ledger effects.

Every inbound statement about money (webhook, poll result, reviewer
decision) goes through ``apply_event``. The engine never writes intent state
itself: it asks the ledger for a compare-and-swap and only the winner of that
swap may invoke allocation, which is what makes N deliveries of the same
event equivalent to one.

Provider-facing conflicts are never raised. They come back as an outcome
plus a reconciliation flag for the report.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from loan_engine.models import (
    AllocationDeadLetter,
    Loan,
    OverpaymentCredit,
    Payment,
    PaymentIntent,
    ProviderEventRecord,
    ReconciliationFlag,
    UnattributedReceipt,
)
from loan_engine.models.base import utcnow
from loan_engine.payments.config import ReconciliationConfig
from loan_engine.payments.errors import (
    AllocationError,
    NotFoundError,
    ReconciliationConflict,
    ValidationError,
)
from loan_engine.payments.model import (
    PROVIDER_CHANNELS,
    AttributionMetadata,
    EventSource,
    EventStatus,
    IntentState,
    Provider,
    ProviderEvent,
    TransitionEvidence,
    ensure_utc,
)
from loan_engine.payments.money import ZERO, quantize
from loan_engine.payments.providers.base import Clock, PaymentChannelProvider
from loan_engine.payments.services.allocation import AllocationEngine, AllocationResult
from loan_engine.payments.services.ledger import LedgerService

logger = logging.getLogger(__name__)


class ReconcileStatus(str, Enum):
    """What applying one event did."""

    APPLIED = "APPLIED"  # Won the state transition
    DUPLICATE = "DUPLICATE"  # Same outcome already recorded
    CONFLICT = "CONFLICT"  # Contradicts a terminal state
    LATE_SETTLED = "LATE_SETTLED"  # Success after expiry, money applied
    HEURISTIC_MATCHED = "HEURISTIC_MATCHED"
    UNATTRIBUTED = "UNATTRIBUTED"
    IGNORED = "IGNORED"
    PENDING = "PENDING"  # Provider still processing


class FlagKind(str, Enum):
    """Reconciliation report flag kinds."""

    CONFLICT = "CONFLICT"
    EXPIRY_RACE = "EXPIRY_RACE"
    HEURISTIC_MATCH = "HEURISTIC_MATCH"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    UNATTRIBUTED = "UNATTRIBUTED"
    DEAD_LETTER = "DEAD_LETTER"


@dataclass
class ReconcileOutcome:
    """Result of applying one provider event."""

    status: ReconcileStatus
    provider: Provider
    external_reference: str
    intent_id: UUID | None = None
    internal_reference: str | None = None
    previous_state: IntentState | None = None
    state: IntentState | None = None
    loan_id: UUID | None = None
    amount: Decimal | None = None
    allocation: AllocationResult | None = None
    dead_letter_id: UUID | None = None
    unattributed_receipt_id: UUID | None = None
    reason: str | None = None
    first_delivery: bool = True
    flags: list[FlagKind] = field(default_factory=list)

    @property
    def payment_id(self) -> UUID | None:
        return self.allocation.payment_id if self.allocation else None

    @property
    def money_applied(self) -> bool:
        return self.allocation is not None


@dataclass
class UnallocatedMoney:
    """Confirmed money that has not reached a loan yet."""

    dead_letters: list[AllocationDeadLetter]
    unattributed: list[UnattributedReceipt]

    @property
    def total(self) -> Decimal:
        amounts = [dl.amount for dl in self.dead_letters]
        amounts.extend(r.amount for r in self.unattributed if r.amount is not None)
        return sum(amounts, ZERO)


@dataclass
class ReconciliationReport:
    """Point-in-time view of reconciliation health."""

    generated_at: datetime
    since: datetime | None
    intents_by_state: dict[str, int]
    late_settled: int
    confirmed_total: Decimal
    allocated_total: Decimal
    reversed_total: Decimal
    credit_total: Decimal
    flag_counts: dict[str, int]
    flags: list[ReconciliationFlag]
    open_dead_letters: list[AllocationDeadLetter]
    open_unattributed: list[UnattributedReceipt]

    @property
    def is_clean(self) -> bool:
        """No money is waiting on an operator."""
        return not self.open_dead_letters and not self.open_unattributed


class ReconciliationEngine:
    """Applies canonical provider events to the ledger and loans."""

    def __init__(
        self,
        db: Session,
        ledger: LedgerService,
        allocation: AllocationEngine,
        config: ReconciliationConfig | None = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.ledger = ledger
        self.allocation = allocation
        self.config = config or ReconciliationConfig()
        self._clock = clock

    # -------------------------------------------------------------------------
    # Event application
    # -------------------------------------------------------------------------

    def apply_event(self, event: ProviderEvent) -> ReconcileOutcome:
        """Apply one provider event.

        Safe to call any number of times for the same event. Must run inside
        a transaction the caller commits; a UNIQUE violation on flush means a
        concurrent delivery won and the caller should roll back and re-apply.
        """
        first = self._record_event(event)
        intent = self._match(event)

        if intent is not None:
            outcome = self._apply_to_intent(intent, event)
        elif event.status is EventStatus.SUCCESS:
            outcome = self._apply_unmatched_success(event)
        else:
            logger.info(
                "Ignoring %s event for unknown %s reference %s",
                event.status.value,
                event.provider.value,
                event.external_reference,
                extra={
                    "provider": event.provider.value,
                    "external_reference": event.external_reference,
                    "outcome": ReconcileStatus.IGNORED.value,
                },
            )
            outcome = self._outcome(ReconcileStatus.IGNORED, event, reason="No matching intent")

        outcome.first_delivery = first
        return outcome

    def _record_event(self, event: ProviderEvent) -> bool:
        """Log the event; returns True on its first delivery."""
        now = self._clock()
        provider, external_reference, status = event.idempotency_key
        record = self.db.execute(
            select(ProviderEventRecord).where(
                ProviderEventRecord.provider == provider,
                ProviderEventRecord.external_reference == external_reference,
                ProviderEventRecord.status == status,
            )
        ).scalar_one_or_none()

        if record is not None:
            record.delivery_count += 1
            record.last_received_at = now
            self.db.flush()
            logger.info(
                "Duplicate delivery #%d of %s %s %s",
                record.delivery_count,
                provider,
                external_reference,
                status,
                extra={"provider": provider, "external_reference": external_reference},
            )
            return False

        self.db.add(
            ProviderEventRecord(
                provider=provider,
                external_reference=external_reference,
                status=status,
                source=event.source.value,
                delivery_count=1,
                payload=event.raw_json(),
                first_received_at=now,
                last_received_at=now,
            )
        )
        self.db.flush()
        return True

    def _match(self, event: ProviderEvent) -> PaymentIntent | None:
        intent = self.ledger.find_by_external_reference(event.provider, event.external_reference)
        if intent is not None:
            return intent
        if not event.internal_reference:
            return None

        # Some providers echo our reference instead of (or as) theirs
        intent = self.ledger.find_by_internal_reference(event.internal_reference)
        if intent is None or intent.provider != event.provider.value:
            return None
        if intent.external_reference is None:
            self.ledger.bind_external_reference(intent.id, event.external_reference)
            intent = self.ledger.get(intent.id)
        return intent

    def _apply_to_intent(self, intent: PaymentIntent, event: ProviderEvent) -> ReconcileOutcome:
        state = IntentState(intent.state)

        if event.status is EventStatus.PENDING:
            status = ReconcileStatus.PENDING if state is IntentState.PENDING else ReconcileStatus.IGNORED
            return self._outcome(
                status,
                event,
                intent=intent,
                previous_state=state,
                reason="Provider still processing",
            )

        if state is IntentState.PENDING:
            target = (
                IntentState.CONFIRMED if event.status is EventStatus.SUCCESS else IntentState.FAILED
            )
            result = self.ledger.transition(intent.id, target, TransitionEvidence.from_event(event))
            intent = self.ledger.get(intent.id)
            if result.won:
                outcome = self._outcome(
                    ReconcileStatus.APPLIED,
                    event,
                    intent=intent,
                    previous_state=IntentState.PENDING,
                    reason=event.result_description,
                )
                if target is IntentState.CONFIRMED:
                    self._claim_parked_receipt(intent)
                    self._check_amount(intent, event, outcome)
                    self._allocate(intent, outcome, event)
                return outcome
            # Lost the race; judge the event against whoever won

        return self._apply_to_terminal(intent, event)

    def _apply_to_terminal(self, intent: PaymentIntent, event: ProviderEvent) -> ReconcileOutcome:
        state = IntentState(intent.state)
        success = event.status is EventStatus.SUCCESS

        if state is IntentState.EXPIRED and success:
            result = self.ledger.settle_late(intent.id, TransitionEvidence.from_event(event))
            intent = self.ledger.get(intent.id)
            if not result.won:
                return self._outcome(
                    ReconcileStatus.DUPLICATE,
                    event,
                    intent=intent,
                    previous_state=state,
                    reason="Late confirmation already settled",
                )
            outcome = self._outcome(
                ReconcileStatus.LATE_SETTLED,
                event,
                intent=intent,
                previous_state=state,
                reason="Confirmed after expiry",
            )
            self._flag(
                FlagKind.EXPIRY_RACE,
                f"Provider confirmed {intent.internal_reference} after it expired",
                intent=intent,
                outcome=outcome,
            )
            self._claim_parked_receipt(intent)
            self._check_amount(intent, event, outcome)
            self._allocate(intent, outcome, event)
            return outcome

        same_outcome = (state is IntentState.CONFIRMED and success) or (
            state in (IntentState.FAILED, IntentState.EXPIRED) and not success
        )
        if same_outcome:
            logger.info(
                "Duplicate %s for %s (already %s)",
                event.status.value,
                intent.internal_reference,
                state.value,
                extra={
                    "intent_id": str(intent.id),
                    "provider": intent.provider,
                    "outcome": ReconcileStatus.DUPLICATE.value,
                },
            )
            return self._outcome(ReconcileStatus.DUPLICATE, event, intent=intent, previous_state=state)

        detail = f"{event.status.value} from {event.source.value} contradicts {state.value}"
        logger.warning(
            "Conflicting event for %s: %s",
            intent.internal_reference,
            detail,
            extra={
                "intent_id": str(intent.id),
                "provider": intent.provider,
                "external_reference": event.external_reference,
                "outcome": ReconcileStatus.CONFLICT.value,
            },
        )
        outcome = self._outcome(
            ReconcileStatus.CONFLICT,
            event,
            intent=intent,
            previous_state=state,
            reason=detail,
        )
        self._flag(FlagKind.CONFLICT, detail, intent=intent, outcome=outcome)
        return outcome

    def _check_amount(
        self,
        intent: PaymentIntent,
        event: ProviderEvent,
        outcome: ReconcileOutcome,
    ) -> None:
        if event.amount is None or quantize(event.amount) == quantize(intent.amount):
            return
        detail = f"Requested {intent.amount}, provider reported {event.amount}"
        logger.warning(
            "Amount mismatch on %s: %s",
            intent.internal_reference,
            detail,
            extra={"intent_id": str(intent.id), "provider": intent.provider},
        )
        self._flag(FlagKind.AMOUNT_MISMATCH, detail, intent=intent, outcome=outcome)

    # -------------------------------------------------------------------------
    # Unmatched money
    # -------------------------------------------------------------------------

    def _apply_unmatched_success(self, event: ProviderEvent) -> ReconcileOutcome:
        loan = self._heuristic_match(event)
        if loan is None or event.amount is None:
            return self._park(event)

        intent = self.ledger.record_confirmed_intent(
            provider=event.provider,
            channel=PROVIDER_CHANNELS[event.provider],
            external_reference=event.external_reference,
            amount=quantize(event.amount),
            currency=loan.currency,
            loan_id=loan.id,
            borrower_id=loan.borrower_id,
            evidence=TransitionEvidence.from_event(event),
            payer_account_ref=event.payer_account_ref,
            account_reference=event.account_reference,
            matched_by_heuristic=True,
        )
        outcome = self._outcome(
            ReconcileStatus.HEURISTIC_MATCHED,
            event,
            intent=intent,
            reason=f"Matched loan {loan.loan_number} by account reference",
        )
        self._flag(
            FlagKind.HEURISTIC_MATCH,
            f"{event.external_reference} matched to loan {loan.loan_number}",
            intent=intent,
            outcome=outcome,
        )
        self._allocate(intent, outcome, event)
        return outcome

    def _heuristic_match(self, event: ProviderEvent) -> Loan | None:
        """Find the one loan an unregistered payment can safely go to."""
        if not self.config.heuristic_matching:
            return None

        reference = (event.account_reference or "").strip()
        if not reference or event.amount is None or event.amount <= 0:
            return None

        loan = self.db.execute(
            select(Loan).where(Loan.loan_number == reference)
        ).scalar_one_or_none()
        if loan is None or loan.status != "ACTIVE":
            return None
        if event.currency is not None and event.currency != loan.currency:
            return None

        now = self._clock()
        occurred_at = ensure_utc(event.occurred_at) or now
        if abs(now - occurred_at) > self.config.heuristic_window:
            logger.info(
                "Payment %s for %s outside matching window",
                event.external_reference,
                reference,
                extra={"external_reference": event.external_reference},
            )
            return None

        outstanding = self.allocation.loan_balance(loan.id).total_outstanding
        if event.amount > outstanding + self.config.overpayment_tolerance:
            logger.info(
                "Payment %s of %s exceeds outstanding %s on %s",
                event.external_reference,
                event.amount,
                outstanding,
                reference,
                extra={"external_reference": event.external_reference, "loan_id": str(loan.id)},
            )
            return None
        return loan

    def _park(self, event: ProviderEvent) -> ReconcileOutcome:
        receipt = self.db.execute(
            select(UnattributedReceipt).where(
                UnattributedReceipt.provider == event.provider.value,
                UnattributedReceipt.external_reference == event.external_reference,
            )
        ).scalar_one_or_none()

        if receipt is None:
            receipt = UnattributedReceipt(
                provider=event.provider.value,
                external_reference=event.external_reference,
                amount=quantize(event.amount) if event.amount is not None else None,
                currency=event.currency,
                payer_account_ref=event.payer_account_ref,
                account_reference=event.account_reference,
                occurred_at=ensure_utc(event.occurred_at),
                payload=event.raw_json(),
                status="OPEN",
                created_at=self._clock(),
            )
            self.db.add(receipt)
            self.db.flush()
            logger.warning(
                "Parked unattributed %s payment %s (%s, reference %r)",
                event.provider.value,
                event.external_reference,
                event.amount,
                event.account_reference,
                extra={
                    "provider": event.provider.value,
                    "external_reference": event.external_reference,
                    "outcome": ReconcileStatus.UNATTRIBUTED.value,
                },
            )

        outcome = self._outcome(
            ReconcileStatus.UNATTRIBUTED,
            event,
            reason="No intent or loan matched",
        )
        outcome.unattributed_receipt_id = receipt.id
        self._flag(
            FlagKind.UNATTRIBUTED,
            f"{event.provider.value} {event.external_reference} matched nothing",
            outcome=outcome,
        )
        return outcome

    def reclaim_parked(
        self,
        intent_id: UUID,
        adapter: PaymentChannelProvider,
    ) -> ReconcileOutcome | None:
        """Apply money parked before the intent's external reference was bound.

        A provider may confirm a transaction before the submit response that
        carries its reference has been recorded. Such a confirmation matches
        nothing and is parked; once the reference is bound it belongs to
        this intent. Returns None when nothing was parked for the reference.
        """
        intent = self.ledger.get(intent_id)
        if intent.external_reference is None:
            return None
        provider = Provider(intent.provider)
        receipt = self._open_receipt(provider, intent.external_reference)
        if receipt is None:
            return None

        logger.warning(
            "Confirmation for %s arrived before its reference was bound; applying parked receipt",
            intent.internal_reference,
            extra={
                "intent_id": str(intent.id),
                "provider": intent.provider,
                "external_reference": intent.external_reference,
            },
        )
        return self._apply_to_intent(intent, self._parked_event(receipt, adapter))

    def _parked_event(
        self,
        receipt: UnattributedReceipt,
        adapter: PaymentChannelProvider,
    ) -> ProviderEvent:
        """Rebuild the provider event a receipt was parked from."""
        if receipt.payload:
            event = adapter.parse_callback(json.loads(receipt.payload))
            if (
                event is not None
                and event.external_reference == receipt.external_reference
                and event.status is EventStatus.SUCCESS
            ):
                return event
        return ProviderEvent(
            provider=Provider(receipt.provider),
            external_reference=receipt.external_reference,
            status=EventStatus.SUCCESS,
            source=EventSource.CALLBACK,
            amount=receipt.amount,
            currency=receipt.currency,
            result_description="Parked confirmation",
            payer_account_ref=receipt.payer_account_ref,
            account_reference=receipt.account_reference,
            occurred_at=receipt.occurred_at,
        )

    def _open_receipt(self, provider: Provider, external_reference: str) -> UnattributedReceipt | None:
        return self.db.execute(
            select(UnattributedReceipt).where(
                UnattributedReceipt.provider == provider.value,
                UnattributedReceipt.external_reference == external_reference,
                UnattributedReceipt.status == "OPEN",
            )
        ).scalar_one_or_none()

    def _claim_parked_receipt(self, intent: PaymentIntent) -> None:
        """Close an open receipt for money this intent has just confirmed."""
        if intent.external_reference is None:
            return
        receipt = self._open_receipt(Provider(intent.provider), intent.external_reference)
        if receipt is None:
            return
        receipt.status = "ATTRIBUTED"
        receipt.attributed_intent_id = intent.id
        receipt.resolved_at = self._clock()
        receipt.resolved_by = "system"
        self.db.flush()
        logger.info(
            "Parked receipt %s resolved by %s",
            receipt.external_reference,
            intent.internal_reference,
            extra={"intent_id": str(intent.id), "external_reference": receipt.external_reference},
        )

    # -------------------------------------------------------------------------
    # Operator resolution
    # -------------------------------------------------------------------------

    def attribute_receipt(
        self,
        receipt_id: UUID,
        loan_id: UUID,
        operator_id: str,
    ) -> ReconcileOutcome:
        """Attribute parked money to a loan and allocate it.

        Raises:
            NotFoundError: Unknown receipt or loan
            ReconciliationConflict: Receipt already attributed
            ValidationError: Receipt has no usable amount, or loan cannot take it
        """
        if not operator_id:
            raise ValidationError("operator_id is required", field="operator_id")

        receipt = self.db.get(
            UnattributedReceipt, receipt_id, with_for_update=True, populate_existing=True
        )
        if receipt is None:
            raise NotFoundError("UnattributedReceipt", receipt_id)
        if receipt.status != "OPEN":
            raise ReconciliationConflict(
                f"Receipt {receipt.external_reference} is already attributed",
                intent_id=receipt.attributed_intent_id,
                state=receipt.status,
            )
        if receipt.amount is None or receipt.amount <= 0:
            raise ValidationError(
                f"Receipt {receipt.external_reference} has no usable amount",
                field="amount",
            )

        loan = self.db.get(Loan, loan_id)
        if loan is None:
            raise NotFoundError("Loan", loan_id)
        if loan.status not in ("ACTIVE", "PAID_OFF"):
            raise ValidationError(f"Loan {loan.loan_number} is {loan.status}", field="loan_id")
        if receipt.currency is not None and receipt.currency != loan.currency:
            raise ValidationError(
                f"Receipt is {receipt.currency}, loan is {loan.currency}",
                field="loan_id",
            )

        provider = Provider(receipt.provider)
        existing = self.ledger.find_by_external_reference(provider, receipt.external_reference)
        if existing is not None:
            raise ReconciliationConflict(
                f"Receipt {receipt.external_reference} belongs to intent "
                f"{existing.internal_reference}",
                intent_id=existing.id,
                state=existing.state,
            )

        intent = self.ledger.record_confirmed_intent(
            provider=provider,
            channel=PROVIDER_CHANNELS[provider],
            external_reference=receipt.external_reference,
            amount=receipt.amount,
            currency=loan.currency,
            loan_id=loan.id,
            borrower_id=loan.borrower_id,
            evidence=TransitionEvidence(
                source=EventSource.OPERATOR,
                result_code="ATTRIBUTED",
                result_description=f"Attributed by {operator_id}",
                receipt=receipt.external_reference,
                amount=receipt.amount,
                actor_id=operator_id,
                metadata=AttributionMetadata(receipt_id=str(receipt.id), operator_id=operator_id),
            ),
            payer_account_ref=receipt.payer_account_ref,
            account_reference=receipt.account_reference,
        )

        receipt.status = "ATTRIBUTED"
        receipt.attributed_intent_id = intent.id
        receipt.resolved_at = self._clock()
        receipt.resolved_by = operator_id
        self.db.flush()

        outcome = ReconcileOutcome(
            status=ReconcileStatus.APPLIED,
            provider=provider,
            external_reference=receipt.external_reference,
            intent_id=intent.id,
            internal_reference=intent.internal_reference,
            state=IntentState.CONFIRMED,
            loan_id=loan.id,
            amount=receipt.amount,
            unattributed_receipt_id=receipt.id,
            reason=f"Attributed by {operator_id}",
        )
        logger.info(
            "Receipt %s attributed to loan %s by %s",
            receipt.external_reference,
            loan.loan_number,
            operator_id,
            extra={"intent_id": str(intent.id), "loan_id": str(loan.id)},
        )
        self._allocate(intent, outcome)
        return outcome

    def retry_dead_letter(
        self,
        dead_letter_id: UUID,
        operator_id: str,
        loan_id: UUID | None = None,
    ) -> AllocationResult:
        """Re-run allocation for parked confirmed money.

        Optionally binds the intent to a loan first. On failure the dead
        letter records the attempt and the AllocationError propagates.

        Raises:
            NotFoundError: Unknown dead letter or loan
            ReconciliationConflict: Dead letter already resolved
            ValidationError: Intent already bound to a different loan
            AllocationError: Allocation still impossible
        """
        dead_letter = self.db.get(
            AllocationDeadLetter, dead_letter_id, with_for_update=True, populate_existing=True
        )
        if dead_letter is None:
            raise NotFoundError("AllocationDeadLetter", dead_letter_id)
        if dead_letter.status != "OPEN":
            raise ReconciliationConflict(
                f"Dead letter {dead_letter_id} is already resolved",
                intent_id=dead_letter.intent_id,
                state=dead_letter.status,
            )

        intent = self.ledger.get(dead_letter.intent_id)
        if loan_id is not None:
            if intent.loan_id is None:
                loan = self.db.get(Loan, loan_id)
                if loan is None:
                    raise NotFoundError("Loan", loan_id)
                self.ledger.attach_loan(intent.id, loan.id, loan.borrower_id)
                intent = self.ledger.get(intent.id)
            elif intent.loan_id != loan_id:
                raise ValidationError(
                    f"Intent {intent.internal_reference} is bound to another loan",
                    field="loan_id",
                )

        try:
            result = self.allocation.allocate(intent)
        except AllocationError as exc:
            self.allocation.dead_letter(intent, str(exc))
            raise

        self.allocation.resolve_dead_letter(dead_letter, result.payment_id, operator_id)
        logger.info(
            "Dead letter %s resolved by %s",
            dead_letter_id,
            operator_id,
            extra={"intent_id": str(intent.id), "payment_id": str(result.payment_id)},
        )
        return result

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def list_unallocated(self) -> UnallocatedMoney:
        dead_letters = list(
            self.db.execute(
                select(AllocationDeadLetter)
                .where(AllocationDeadLetter.status == "OPEN")
                .order_by(AllocationDeadLetter.created_at)
            ).scalars()
        )
        receipts = list(
            self.db.execute(
                select(UnattributedReceipt)
                .where(UnattributedReceipt.status == "OPEN")
                .order_by(UnattributedReceipt.created_at)
            ).scalars()
        )
        return UnallocatedMoney(dead_letters=dead_letters, unattributed=receipts)

    def build_report(self, since: datetime | None = None) -> ReconciliationReport:
        """Summarize intents, money and flags, optionally since a point in time."""
        since = ensure_utc(since)

        state_query = select(PaymentIntent.state, func.count()).group_by(PaymentIntent.state)
        if since is not None:
            state_query = state_query.where(PaymentIntent.created_at >= since)
        intents_by_state = {state.value: 0 for state in IntentState}
        for state, count in self.db.execute(state_query):
            intents_by_state[state] = count

        late_query = select(func.count()).select_from(PaymentIntent).where(
            PaymentIntent.late_settled_at.is_not(None)
        )
        confirmed_query = select(
            func.coalesce(func.sum(func.coalesce(PaymentIntent.confirmed_amount, PaymentIntent.amount)), 0)
        ).where(
            (PaymentIntent.state == IntentState.CONFIRMED.value)
            | PaymentIntent.late_settled_at.is_not(None)
        )
        payment_query = select(func.coalesce(func.sum(Payment.amount), 0))
        credit_query = select(func.coalesce(func.sum(OverpaymentCredit.amount), 0)).where(
            OverpaymentCredit.is_reversed.is_(False)
        )
        flag_query = select(ReconciliationFlag).order_by(ReconciliationFlag.created_at)
        if since is not None:
            late_query = late_query.where(PaymentIntent.created_at >= since)
            confirmed_query = confirmed_query.where(PaymentIntent.created_at >= since)
            payment_query = payment_query.where(Payment.created_at >= since)
            credit_query = credit_query.where(OverpaymentCredit.created_at >= since)
            flag_query = flag_query.where(ReconciliationFlag.created_at >= since)

        flags = list(self.db.execute(flag_query).scalars())
        flag_counts: dict[str, int] = {}
        for flag in flags:
            flag_counts[flag.kind] = flag_counts.get(flag.kind, 0) + 1

        unallocated = self.list_unallocated()
        return ReconciliationReport(
            generated_at=self._clock(),
            since=since,
            intents_by_state=intents_by_state,
            late_settled=self.db.execute(late_query).scalar_one(),
            confirmed_total=_money(self.db.execute(confirmed_query).scalar_one()),
            allocated_total=_money(
                self.db.execute(payment_query.where(Payment.is_reversed.is_(False))).scalar_one()
            ),
            reversed_total=_money(
                self.db.execute(payment_query.where(Payment.is_reversed.is_(True))).scalar_one()
            ),
            credit_total=_money(self.db.execute(credit_query).scalar_one()),
            flag_counts=flag_counts,
            flags=flags,
            open_dead_letters=unallocated.dead_letters,
            open_unattributed=unallocated.unattributed,
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _allocate(
        self,
        intent: PaymentIntent,
        outcome: ReconcileOutcome,
        event: ProviderEvent | None = None,
    ) -> None:
        """Allocate a just-won intent, dead-lettering on failure."""
        outcome.amount = intent.settled_amount
        try:
            if event is not None and event.currency and event.currency != intent.currency:
                raise AllocationError(
                    f"Provider reported {event.currency}, intent is {intent.currency}",
                    intent_id=intent.id,
                )
            outcome.allocation = self.allocation.allocate(intent)
            outcome.loan_id = outcome.allocation.loan_id
        except AllocationError as exc:
            dead_letter = self.allocation.dead_letter(intent, exc.message)
            outcome.dead_letter_id = dead_letter.id
            outcome.reason = exc.message
            self._flag(FlagKind.DEAD_LETTER, exc.message[:255], intent=intent, outcome=outcome)

    def _flag(
        self,
        kind: FlagKind,
        detail: str,
        intent: PaymentIntent | None = None,
        outcome: ReconcileOutcome | None = None,
    ) -> ReconciliationFlag:
        """Write a flag unless an identical one exists."""
        detail = detail[:255]
        provider = outcome.provider.value if outcome else (intent.provider if intent else None)
        external_reference = outcome.external_reference if outcome else None
        intent_id = intent.id if intent else None

        query = select(ReconciliationFlag).where(
            ReconciliationFlag.kind == kind.value,
            ReconciliationFlag.detail == detail,
        )
        if intent_id is not None:
            query = query.where(ReconciliationFlag.intent_id == intent_id)
        else:
            query = query.where(
                ReconciliationFlag.provider == provider,
                ReconciliationFlag.external_reference == external_reference,
            )
        existing = self.db.execute(query).scalars().first()

        if outcome is not None and kind not in outcome.flags:
            outcome.flags.append(kind)
        if existing is not None:
            return existing

        flag = ReconciliationFlag(
            kind=kind.value,
            intent_id=intent_id,
            provider=provider,
            external_reference=external_reference,
            detail=detail,
            created_at=self._clock(),
        )
        self.db.add(flag)
        self.db.flush()
        return flag

    @staticmethod
    def _outcome(
        status: ReconcileStatus,
        event: ProviderEvent,
        intent: PaymentIntent | None = None,
        previous_state: IntentState | None = None,
        reason: str | None = None,
    ) -> ReconcileOutcome:
        return ReconcileOutcome(
            status=status,
            provider=event.provider,
            external_reference=event.external_reference,
            intent_id=intent.id if intent else None,
            internal_reference=intent.internal_reference if intent else None,
            previous_state=previous_state,
            state=IntentState(intent.state) if intent else None,
            loan_id=intent.loan_id if intent else None,
            amount=intent.settled_amount if intent else event.amount,
            reason=reason,
        )


def _money(value: object) -> Decimal:
    return quantize(Decimal(str(value or 0)))
