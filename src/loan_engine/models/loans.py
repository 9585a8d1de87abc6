"""Loan and repayment schedule models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    Date,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from loan_engine.models.base import Base, TimestampMixin, UTCDateTime

ZERO = Decimal("0.00")


class Loan(Base, TimestampMixin):
    """A disbursed loan that accepts repayments.

    Loans are created by origination; this engine only flips status between
    active and paid_off as money is allocated or reversed.
    """

    __tablename__ = "loan"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    loan_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    borrower_id: Mapped[UUID] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ACTIVE")
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('ACTIVE', 'PAID_OFF', 'CLOSED', 'WRITTEN_OFF')",
            name="loan_status_check",
        ),
    )

    schedule_lines: Mapped[list[LoanScheduleLine]] = relationship(
        back_populates="loan",
        order_by="LoanScheduleLine.due_date",
    )


class LoanScheduleLine(Base):
    """One installment of a loan's repayment schedule."""

    __tablename__ = "loan_schedule_line"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    loan_id: Mapped[UUID] = mapped_column(
        ForeignKey("loan.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    installment_number: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)

    penalty_due: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    fees_due: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    interest_due: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    principal_due: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    penalty_paid: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    fees_paid: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    interest_paid: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    principal_paid: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    is_paid: Mapped[bool] = mapped_column(nullable=False, default=False)
    paid_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    __table_args__ = (
        UniqueConstraint("loan_id", "installment_number", name="loan_schedule_line_number_key"),
        CheckConstraint(
            "penalty_paid >= 0 AND penalty_paid <= penalty_due",
            name="loan_schedule_line_penalty_check",
        ),
        CheckConstraint(
            "fees_paid >= 0 AND fees_paid <= fees_due",
            name="loan_schedule_line_fees_check",
        ),
        CheckConstraint(
            "interest_paid >= 0 AND interest_paid <= interest_due",
            name="loan_schedule_line_interest_check",
        ),
        CheckConstraint(
            "principal_paid >= 0 AND principal_paid <= principal_due",
            name="loan_schedule_line_principal_check",
        ),
    )

    loan: Mapped[Loan] = relationship(back_populates="schedule_lines")

    @property
    def total_due(self) -> Decimal:
        return self.penalty_due + self.fees_due + self.interest_due + self.principal_due

    @property
    def total_paid(self) -> Decimal:
        return self.penalty_paid + self.fees_paid + self.interest_paid + self.principal_paid

    @property
    def outstanding(self) -> Decimal:
        return self.total_due - self.total_paid
