"""Transaction ledger - single source of truth for payment intent state.

The ledger is the only writer of PaymentIntent state and provider outcome
fields. Every state change is a single conditional UPDATE, so when a
webhook, a poll result and the sweep race on the same intent exactly one
of them wins and the others observe the winner's terminal state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from loan_engine.models import PaymentIntent
from loan_engine.models.base import utcnow
from loan_engine.payments.errors import IntentNotFoundError, ValidationError
from loan_engine.payments.model import (
    Channel,
    IntentState,
    Provider,
    ProviderMetadata,
    TransitionEvidence,
    generate_internal_reference,
    serialize_metadata,
)
from loan_engine.payments.providers.base import Clock
from loan_engine.payments.services.state_machine import IntentStateMachine

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class TransitionResult:
    """Result of a compare-and-swap on intent state."""

    intent_id: UUID
    won: bool
    previous_state: IntentState
    state: IntentState

    @property
    def was_noop(self) -> bool:
        """True if the intent was already terminal and nothing changed."""
        return not self.won


@dataclass
class IntentPage:
    """One page of intents, newest first."""

    intents: list[PaymentIntent]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.limit)


class LedgerService:
    """Durable store for the payment intent lifecycle."""

    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self._clock = clock

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_intent(
        self,
        *,
        provider: Provider,
        channel: Channel,
        amount: Decimal,
        currency: str,
        payer_account_ref: str | None,
        account_reference: str | None,
        loan_id: UUID | None,
        borrower_id: UUID | None,
        description: str | None = None,
        internal_reference: str | None = None,
    ) -> PaymentIntent:
        """Create a PENDING intent.

        The internal reference is assigned here, before any provider call.

        Returns:
            The flushed PaymentIntent
        """
        if amount <= 0:
            raise ValueError("Amount must be positive")

        intent = PaymentIntent(
            provider=provider.value,
            channel=channel.value,
            internal_reference=internal_reference or generate_internal_reference(provider),
            amount=amount,
            currency=currency,
            payer_account_ref=payer_account_ref,
            account_reference=account_reference,
            description=description,
            loan_id=loan_id,
            borrower_id=borrower_id,
            state=IntentState.PENDING.value,
            version=1,
            created_at=self._clock(),
        )
        self.db.add(intent)
        self.db.flush()
        logger.info(
            "Created payment intent %s",
            intent.internal_reference,
            extra={
                "intent_id": str(intent.id),
                "internal_reference": intent.internal_reference,
                "provider": provider.value,
            },
        )
        return intent

    def record_confirmed_intent(
        self,
        *,
        provider: Provider,
        channel: Channel,
        external_reference: str,
        amount: Decimal,
        currency: str,
        loan_id: UUID,
        borrower_id: UUID | None,
        evidence: TransitionEvidence,
        payer_account_ref: str | None = None,
        account_reference: str | None = None,
        matched_by_heuristic: bool = False,
    ) -> PaymentIntent:
        """Create an intent directly in CONFIRMED state.

        Used for inbound money that had no prior initiation: heuristic matches
        and operator attributions. The UNIQUE (provider, external_reference)
        constraint rejects a concurrent second creation at flush time.
        """
        now = self._clock()
        intent = PaymentIntent(
            provider=provider.value,
            channel=channel.value,
            internal_reference=generate_internal_reference(provider),
            external_reference=external_reference,
            amount=amount,
            confirmed_amount=amount,
            currency=currency,
            payer_account_ref=payer_account_ref,
            account_reference=account_reference,
            loan_id=loan_id,
            borrower_id=borrower_id,
            state=IntentState.CONFIRMED.value,
            result_code=evidence.result_code,
            result_description=evidence.result_description,
            provider_receipt=evidence.receipt or external_reference,
            matched_by_heuristic=matched_by_heuristic,
            confirmation_metadata=serialize_metadata(evidence.metadata),
            version=1,
            created_at=now,
            confirmed_at=now,
            updated_at=now,
        )
        self.db.add(intent)
        self.db.flush()
        logger.info(
            "Recorded confirmed inbound intent %s",
            intent.internal_reference,
            extra={
                "intent_id": str(intent.id),
                "external_reference": external_reference,
                "provider": provider.value,
                "loan_id": str(loan_id),
            },
        )
        return intent

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get(self, intent_id: UUID) -> PaymentIntent:
        """Load an intent with its current database state.

        Raises:
            IntentNotFoundError: If no such intent exists
        """
        intent = self.db.get(PaymentIntent, intent_id, populate_existing=True)
        if intent is None:
            raise IntentNotFoundError(intent_id)
        return intent

    def find_by_internal_reference(self, internal_reference: str) -> PaymentIntent | None:
        return self.db.execute(
            select(PaymentIntent)
            .where(PaymentIntent.internal_reference == internal_reference)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def find_by_external_reference(
        self,
        provider: Provider,
        external_reference: str,
    ) -> PaymentIntent | None:
        return self.db.execute(
            select(PaymentIntent)
            .where(
                PaymentIntent.provider == provider.value,
                PaymentIntent.external_reference == external_reference,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def list_pending(
        self,
        *,
        channels: Iterable[Channel] | None = None,
        providers: Iterable[Provider] | None = None,
        created_before: datetime | None = None,
        require_external_reference: bool = False,
        limit: int | None = None,
    ) -> list[PaymentIntent]:
        """PENDING intents, oldest first."""
        stmt = select(PaymentIntent).where(PaymentIntent.state == IntentState.PENDING.value)
        if channels is not None:
            stmt = stmt.where(PaymentIntent.channel.in_([c.value for c in channels]))
        if providers is not None:
            stmt = stmt.where(PaymentIntent.provider.in_([p.value for p in providers]))
        if created_before is not None:
            stmt = stmt.where(PaymentIntent.created_at <= created_before)
        if require_external_reference:
            stmt = stmt.where(PaymentIntent.external_reference.is_not(None))
        stmt = stmt.order_by(PaymentIntent.created_at, PaymentIntent.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.db.execute(stmt).scalars())

    def list_intents(
        self,
        *,
        provider: Provider | None = None,
        state: IntentState | None = None,
        loan_id: UUID | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> IntentPage:
        """Filtered, paginated intents for operators.

        Raises:
            ValidationError: page below 1 or limit outside 1..MAX_PAGE_SIZE
        """
        if page < 1:
            raise ValidationError("page must be at least 1", field="page")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit")

        conditions = []
        if provider is not None:
            conditions.append(PaymentIntent.provider == provider.value)
        if state is not None:
            conditions.append(PaymentIntent.state == state.value)
        if loan_id is not None:
            conditions.append(PaymentIntent.loan_id == loan_id)

        total = self.db.execute(
            select(func.count()).select_from(PaymentIntent).where(*conditions)
        ).scalar_one()
        intents = self.db.execute(
            select(PaymentIntent)
            .where(*conditions)
            .order_by(PaymentIntent.created_at.desc(), PaymentIntent.internal_reference)
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars()
        return IntentPage(intents=list(intents), page=page, limit=limit, total=total)

    # -------------------------------------------------------------------------
    # Mutation (compare-and-swap)
    # -------------------------------------------------------------------------

    def bind_external_reference(
        self,
        intent_id: UUID,
        external_reference: str,
        metadata: ProviderMetadata | None = None,
    ) -> bool:
        """Record the provider's reference once it responds.

        Returns True if the reference is now bound to this value; False if a
        different reference was bound first.
        """
        result = self.db.execute(
            update(PaymentIntent)
            .where(
                PaymentIntent.id == intent_id,
                PaymentIntent.external_reference.is_(None),
            )
            .values(
                external_reference=external_reference,
                submission_metadata=serialize_metadata(metadata),
                updated_at=self._clock(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            self.get(intent_id)
            return True

        intent = self.get(intent_id)
        if intent.external_reference == external_reference:
            return True
        logger.warning(
            "Intent %s already bound to %s; refusing %s",
            intent.internal_reference,
            intent.external_reference,
            external_reference,
            extra={"intent_id": str(intent_id), "external_reference": external_reference},
        )
        return False

    def transition(
        self,
        intent_id: UUID,
        target_state: IntentState,
        evidence: TransitionEvidence,
    ) -> TransitionResult:
        """Move a PENDING intent to a terminal state.

        This is the sole mutator of intent state. A request against an
        already-terminal intent is a no-op that returns the existing state
        and logs the conflict.

        Raises:
            InvalidTransitionError: If target_state is not terminal
            IntentNotFoundError: If no such intent exists
        """
        target = IntentStateMachine.validate_target(target_state)
        now = self._clock()

        values: dict = {
            "state": target.value,
            "version": PaymentIntent.version + 1,
            "updated_at": now,
        }
        if evidence.result_code is not None:
            values["result_code"] = evidence.result_code
        if evidence.result_description is not None:
            values["result_description"] = evidence.result_description[:255]
        if evidence.receipt is not None:
            values["provider_receipt"] = evidence.receipt
        if evidence.metadata is not None:
            values["confirmation_metadata"] = serialize_metadata(evidence.metadata)
        if target is IntentState.CONFIRMED:
            values["confirmed_at"] = now
            if evidence.amount is not None:
                values["confirmed_amount"] = evidence.amount
            else:
                values["confirmed_amount"] = PaymentIntent.amount

        result = self.db.execute(
            update(PaymentIntent)
            .where(
                PaymentIntent.id == intent_id,
                PaymentIntent.state == IntentState.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        intent = self.get(intent_id)
        current = IntentState(intent.state)

        if result.rowcount == 1:
            logger.info(
                "Intent %s %s -> %s via %s",
                intent.internal_reference,
                IntentState.PENDING.value,
                target.value,
                evidence.source.value,
                extra={
                    "intent_id": str(intent_id),
                    "internal_reference": intent.internal_reference,
                    "provider": intent.provider,
                },
            )
            return TransitionResult(
                intent_id=intent_id,
                won=True,
                previous_state=IntentState.PENDING,
                state=current,
            )

        self._log_conflict(intent, target, evidence)
        return TransitionResult(
            intent_id=intent_id,
            won=False,
            previous_state=current,
            state=current,
        )

    def settle_late(self, intent_id: UUID, evidence: TransitionEvidence) -> TransitionResult:
        """Accept a confirmation that arrived after the sweep expired the intent.

        The state stays EXPIRED; ``late_settled_at`` is set exactly once and
        only the caller that sets it may allocate the money.
        """
        now = self._clock()
        values: dict = {
            "late_settled_at": now,
            "version": PaymentIntent.version + 1,
            "updated_at": now,
            "confirmed_amount": evidence.amount if evidence.amount is not None else PaymentIntent.amount,
        }
        if evidence.result_code is not None:
            values["result_code"] = evidence.result_code
        if evidence.result_description is not None:
            values["result_description"] = evidence.result_description[:255]
        if evidence.receipt is not None:
            values["provider_receipt"] = evidence.receipt
        if evidence.metadata is not None:
            values["confirmation_metadata"] = serialize_metadata(evidence.metadata)

        result = self.db.execute(
            update(PaymentIntent)
            .where(
                PaymentIntent.id == intent_id,
                PaymentIntent.state == IntentState.EXPIRED.value,
                PaymentIntent.late_settled_at.is_(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        intent = self.get(intent_id)
        won = result.rowcount == 1
        if won:
            logger.warning(
                "Late confirmation accepted for expired intent %s",
                intent.internal_reference,
                extra={
                    "intent_id": str(intent_id),
                    "internal_reference": intent.internal_reference,
                    "provider": intent.provider,
                },
            )
        else:
            logger.info(
                "Late confirmation for %s already settled",
                intent.internal_reference,
                extra={"intent_id": str(intent_id)},
            )
        state = IntentState(intent.state)
        return TransitionResult(intent_id=intent_id, won=won, previous_state=state, state=state)

    def attach_loan(self, intent_id: UUID, loan_id: UUID, borrower_id: UUID | None) -> bool:
        """Bind an intent with no loan to a loan. Returns False if already bound."""
        result = self.db.execute(
            update(PaymentIntent)
            .where(
                PaymentIntent.id == intent_id,
                PaymentIntent.loan_id.is_(None),
            )
            .values(
                loan_id=loan_id,
                borrower_id=borrower_id,
                version=PaymentIntent.version + 1,
                updated_at=self._clock(),
            )
            .execution_options(synchronize_session=False)
        )
        self.get(intent_id)
        return result.rowcount == 1

    def _log_conflict(
        self,
        intent: PaymentIntent,
        target: IntentState,
        evidence: TransitionEvidence,
    ) -> None:
        extra = {
            "intent_id": str(intent.id),
            "internal_reference": intent.internal_reference,
            "provider": intent.provider,
        }
        if intent.state == target.value:
            logger.info(
                "Intent %s already %s; duplicate %s ignored",
                intent.internal_reference,
                intent.state,
                evidence.source.value,
                extra=extra,
            )
        else:
            logger.warning(
                "Intent %s is %s; refusing transition to %s from %s",
                intent.internal_reference,
                intent.state,
                target.value,
                evidence.source.value,
                extra=extra,
            )
