"""Payment intent, payment and reconciliation models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from loan_engine.models.base import Base, TimestampMixin, UTCDateTime

ZERO = Decimal("0.00")


class PaymentIntent(Base, TimestampMixin):
    """Internal record of an attempted money movement.

    ``state`` and the provider outcome fields are written only by the
    transaction ledger.
    """

    __tablename__ = "payment_intent"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    provider: Mapped[str] = mapped_column(String(16), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    internal_reference: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    external_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    confirmed_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payer_account_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    account_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(String(128), nullable=True)
    loan_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("loan.id"),
        nullable=True,
        index=True,
    )
    borrower_id: Mapped[UUID | None] = mapped_column(nullable=True)

    state: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    result_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    result_description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_receipt: Mapped[str | None] = mapped_column(String(64), nullable=True)
    matched_by_heuristic: Mapped[bool] = mapped_column(nullable=False, default=False)

    # Opaque JSON blobs; typed at the adapter boundary
    submission_metadata: Mapped[str | None] = mapped_column(Text, nullable=True)
    confirmation_metadata: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    late_settled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "provider",
            "external_reference",
            name="payment_intent_provider_external_reference_key",
        ),
        CheckConstraint(
            "state IN ('PENDING', 'CONFIRMED', 'FAILED', 'EXPIRED')",
            name="payment_intent_state_check",
        ),
        CheckConstraint(
            "channel IN ('PUSH', 'PULL', 'MANUAL')",
            name="payment_intent_channel_check",
        ),
        CheckConstraint("amount > 0", name="payment_intent_amount_check"),
        CheckConstraint(
            "late_settled_at IS NULL OR state = 'EXPIRED'",
            name="payment_intent_late_settlement_check",
        ),
    )

    @property
    def settled_amount(self) -> Decimal:
        """Amount the provider actually reported, falling back to the request."""
        if self.confirmed_amount is not None:
            return self.confirmed_amount
        return self.amount


class Payment(Base, TimestampMixin):
    """Authoritative record of confirmed money applied to a loan."""

    __tablename__ = "loan_payment"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    intent_id: Mapped[UUID] = mapped_column(
        ForeignKey("payment_intent.id"),
        nullable=False,
        unique=True,
    )
    loan_id: Mapped[UUID] = mapped_column(ForeignKey("loan.id"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    penalty_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    fees_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    interest_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    principal_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    overpayment_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    receipt_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    payment_method: Mapped[str] = mapped_column(String(16), nullable=False)

    is_reversed: Mapped[bool] = mapped_column(nullable=False, default=False)
    reversed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    reversed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reversal_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    allocations: Mapped[list[PaymentAllocation]] = relationship(back_populates="payment")


class PaymentAllocation(Base):
    """Amounts one payment applied to one schedule line."""

    __tablename__ = "payment_allocation"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payment_id: Mapped[UUID] = mapped_column(
        ForeignKey("loan_payment.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    schedule_line_id: Mapped[UUID] = mapped_column(
        ForeignKey("loan_schedule_line.id"),
        nullable=False,
    )
    penalty_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    fees_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    interest_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    principal_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    __table_args__ = (
        UniqueConstraint("payment_id", "schedule_line_id", name="payment_allocation_line_key"),
    )

    payment: Mapped[Payment] = relationship(back_populates="allocations")


class OverpaymentCredit(Base, TimestampMixin):
    """Remainder of a payment after every known due was covered."""

    __tablename__ = "overpayment_credit"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    loan_id: Mapped[UUID] = mapped_column(ForeignKey("loan.id"), nullable=False, index=True)
    payment_id: Mapped[UUID] = mapped_column(
        ForeignKey("loan_payment.id"),
        nullable=False,
        unique=True,
    )
    intent_id: Mapped[UUID] = mapped_column(ForeignKey("payment_intent.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    is_reversed: Mapped[bool] = mapped_column(nullable=False, default=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="overpayment_credit_amount_check"),
    )


class AllocationDeadLetter(Base, TimestampMixin):
    """Confirmed money that could not be allocated, awaiting an operator."""

    __tablename__ = "allocation_dead_letter"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    intent_id: Mapped[UUID] = mapped_column(
        ForeignKey("payment_intent.id"),
        nullable=False,
        unique=True,
    )
    loan_id: Mapped[UUID | None] = mapped_column(nullable=True)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="OPEN")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    payment_id: Mapped[UUID | None] = mapped_column(nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    intent: Mapped[PaymentIntent] = relationship(lazy="selectin")

    __table_args__ = (
        CheckConstraint(
            "status IN ('OPEN', 'RESOLVED')",
            name="allocation_dead_letter_status_check",
        ),
    )

    @property
    def amount(self) -> Decimal:
        """Confirmed money waiting on this dead letter."""
        return self.intent.settled_amount


class UnattributedReceipt(Base, TimestampMixin):
    """Inbound money that matched no intent and no loan."""

    __tablename__ = "unattributed_receipt"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    provider: Mapped[str] = mapped_column(String(16), nullable=False)
    external_reference: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    payer_account_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    account_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    occurred_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="OPEN")
    attributed_intent_id: Mapped[UUID | None] = mapped_column(nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "provider",
            "external_reference",
            name="unattributed_receipt_provider_reference_key",
        ),
        CheckConstraint(
            "status IN ('OPEN', 'ATTRIBUTED')",
            name="unattributed_receipt_status_check",
        ),
    )


class ProviderEventRecord(Base):
    """Inbound provider event log, one row per idempotency key."""

    __tablename__ = "provider_event_record"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    provider: Mapped[str] = mapped_column(String(16), nullable=False)
    external_reference: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False)
    delivery_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    first_received_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    last_received_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "provider",
            "external_reference",
            "status",
            name="provider_event_record_key",
        ),
    )


class ReconciliationFlag(Base, TimestampMixin):
    """Audit flag surfaced on the reconciliation report."""

    __tablename__ = "reconciliation_flag"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    kind: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    intent_id: Mapped[UUID | None] = mapped_column(nullable=True)
    provider: Mapped[str | None] = mapped_column(String(16), nullable=True)
    external_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    detail: Mapped[str] = mapped_column(String(255), nullable=False)
