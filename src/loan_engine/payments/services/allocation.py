"""Allocation engine - spends confirmed money across a loan's schedule.

Waterfall, oldest due date first, per schedule line:
    1. penalty
    2. fees
    3. interest
    4. principal

Anything left once every known due is covered becomes an overpayment credit
against the loan. The plan is computed as a pure function before any row is
touched, so every AllocationError is raised with the schedule unchanged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from loan_engine.models import (
    AllocationDeadLetter,
    Loan,
    LoanScheduleLine,
    OverpaymentCredit,
    Payment,
    PaymentAllocation,
    PaymentIntent,
)
from loan_engine.models.base import utcnow
from loan_engine.payments.errors import AllocationError, NotFoundError, ReversalError
from loan_engine.payments.model import IntentState
from loan_engine.payments.money import ZERO, quantize
from loan_engine.payments.providers.base import Clock

logger = logging.getLogger(__name__)

# Waterfall order
COMPONENTS = ("penalty", "fees", "interest", "principal")

ALLOCATABLE_LOAN_STATUSES = {"ACTIVE", "PAID_OFF"}


@dataclass(frozen=True)
class LineBalance:
    """Snapshot of one schedule line's dues and payments."""

    line_id: UUID
    due_date: date
    installment_number: int
    penalty_due: Decimal
    fees_due: Decimal
    interest_due: Decimal
    principal_due: Decimal
    penalty_paid: Decimal = ZERO
    fees_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    principal_paid: Decimal = ZERO

    @classmethod
    def from_line(cls, line: LoanScheduleLine) -> LineBalance:
        return cls(
            line_id=line.id,
            due_date=line.due_date,
            installment_number=line.installment_number,
            penalty_due=line.penalty_due,
            fees_due=line.fees_due,
            interest_due=line.interest_due,
            principal_due=line.principal_due,
            penalty_paid=line.penalty_paid,
            fees_paid=line.fees_paid,
            interest_paid=line.interest_paid,
            principal_paid=line.principal_paid,
        )

    def outstanding(self, component: str) -> Decimal:
        due = getattr(self, f"{component}_due")
        paid = getattr(self, f"{component}_paid")
        return max(due - paid, ZERO)

    @property
    def total_outstanding(self) -> Decimal:
        return sum((self.outstanding(c) for c in COMPONENTS), ZERO)


@dataclass(frozen=True)
class LineAllocation:
    """Amounts applied to one schedule line."""

    line_id: UUID
    penalty: Decimal = ZERO
    fees: Decimal = ZERO
    interest: Decimal = ZERO
    principal: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.penalty + self.fees + self.interest + self.principal


@dataclass(frozen=True)
class AllocationPlan:
    """Result of running the waterfall over a schedule snapshot."""

    amount: Decimal
    lines: tuple[LineAllocation, ...]
    overpayment: Decimal

    def component_total(self, component: str) -> Decimal:
        return sum((getattr(line, component) for line in self.lines), ZERO)

    @property
    def allocated(self) -> Decimal:
        return sum((line.total for line in self.lines), ZERO)


def plan_waterfall(amount: Decimal, lines: Sequence[LineBalance]) -> AllocationPlan:
    """Spend ``amount`` over ``lines`` in waterfall order.

    Lines are taken in ascending due date (then installment number); within a
    line, penalty, fees, interest and principal in that order. Rounding
    happens once, on each component as it is applied.

    Returns:
        AllocationPlan where allocated + overpayment == amount
    """
    remaining = quantize(amount)
    total = remaining
    planned: list[LineAllocation] = []

    for line in sorted(lines, key=lambda l: (l.due_date, l.installment_number)):
        if remaining <= ZERO:
            break
        applied: dict[str, Decimal] = {}
        for component in COMPONENTS:
            take = quantize(min(remaining, line.outstanding(component)))
            applied[component] = take
            remaining -= take
        line_allocation = LineAllocation(line_id=line.line_id, **applied)
        if line_allocation.total > ZERO:
            planned.append(line_allocation)

    return AllocationPlan(amount=total, lines=tuple(planned), overpayment=remaining)


@dataclass(frozen=True)
class AllocationResult:
    """Payment produced by one allocation."""

    payment_id: UUID
    intent_id: UUID
    loan_id: UUID
    amount: Decimal
    penalty_amount: Decimal
    fees_amount: Decimal
    interest_amount: Decimal
    principal_amount: Decimal
    overpayment_amount: Decimal
    lines: tuple[LineAllocation, ...]
    receipt_number: str
    loan_paid_off: bool


@dataclass(frozen=True)
class ReversalResult:
    """Outcome of reversing a payment."""

    payment_id: UUID
    loan_id: UUID
    amount: Decimal
    overpayment_reversed: Decimal
    loan_reopened: bool


@dataclass
class LoanBalance:
    """Outstanding dues on a loan, by component."""

    loan_id: UUID
    penalty: Decimal = ZERO
    fees: Decimal = ZERO
    interest: Decimal = ZERO
    principal: Decimal = ZERO
    credit: Decimal = ZERO
    open_lines: int = 0
    lines: list[LineBalance] = field(default_factory=list)

    @property
    def total_outstanding(self) -> Decimal:
        return self.penalty + self.fees + self.interest + self.principal


class AllocationEngine:
    """Creates Payments and mutates schedule lines.

    The only component allowed to write Payment, PaymentAllocation,
    OverpaymentCredit or schedule-line paid amounts.
    """

    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self._clock = clock

    # -------------------------------------------------------------------------
    # Forward allocation
    # -------------------------------------------------------------------------

    def allocate(self, intent: PaymentIntent) -> AllocationResult:
        """Allocate a confirmed intent's money to its loan.

        Must run in the same transaction as the winning state transition.

        Raises:
            AllocationError: Before any mutation, if the intent or loan cannot
                take the allocation
        """
        loan_id = self._check_intent(intent)

        loan = self.db.get(Loan, loan_id, with_for_update=True, populate_existing=True)
        if loan is None:
            raise AllocationError(f"Loan {loan_id} does not exist", intent_id=intent.id)
        if loan.status not in ALLOCATABLE_LOAN_STATUSES:
            raise AllocationError(
                f"Loan {loan.loan_number} is {loan.status}",
                intent_id=intent.id,
                loan_id=loan.id,
            )
        if loan.currency != intent.currency:
            raise AllocationError(
                f"Currency mismatch: intent {intent.currency}, loan {loan.currency}",
                intent_id=intent.id,
                loan_id=loan.id,
            )

        amount = intent.settled_amount
        if amount <= 0:
            raise AllocationError("Confirmed amount must be positive", intent_id=intent.id)

        lines = self._locked_lines(loan.id)
        plan = plan_waterfall(amount, [LineBalance.from_line(line) for line in lines])
        return self._apply(intent, loan, lines, plan)

    def _check_intent(self, intent: PaymentIntent) -> UUID:
        """Return the loan the intent is bound to if it may be allocated."""
        state = IntentState(intent.state)
        late_settled = state is IntentState.EXPIRED and intent.late_settled_at is not None
        if state is not IntentState.CONFIRMED and not late_settled:
            raise AllocationError(
                f"Intent {intent.internal_reference} is {intent.state}, not confirmed",
                intent_id=intent.id,
            )
        loan_id = intent.loan_id
        if loan_id is None:
            raise AllocationError(
                f"Intent {intent.internal_reference} is not bound to a loan",
                intent_id=intent.id,
            )
        existing = self.db.execute(
            select(Payment.id).where(Payment.intent_id == intent.id)
        ).scalar_one_or_none()
        if existing is not None:
            raise AllocationError(
                f"Intent {intent.internal_reference} already allocated to payment {existing}",
                intent_id=intent.id,
            )
        return loan_id

    def _locked_lines(self, loan_id: UUID) -> list[LoanScheduleLine]:
        return list(
            self.db.execute(
                select(LoanScheduleLine)
                .where(LoanScheduleLine.loan_id == loan_id)
                .order_by(LoanScheduleLine.due_date, LoanScheduleLine.installment_number)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalars()
        )

    def _apply(
        self,
        intent: PaymentIntent,
        loan: Loan,
        lines: list[LoanScheduleLine],
        plan: AllocationPlan,
    ) -> AllocationResult:
        today = self._clock().date()
        by_id = {line.id: line for line in lines}

        payment = Payment(
            intent_id=intent.id,
            loan_id=loan.id,
            amount=plan.amount,
            penalty_amount=plan.component_total("penalty"),
            fees_amount=plan.component_total("fees"),
            interest_amount=plan.component_total("interest"),
            principal_amount=plan.component_total("principal"),
            overpayment_amount=plan.overpayment,
            receipt_number=f"RCP-{intent.internal_reference}",
            payment_method=intent.provider,
            created_at=self._clock(),
        )
        self.db.add(payment)
        self.db.flush()

        for planned in plan.lines:
            line = by_id[planned.line_id]
            for component in COMPONENTS:
                paid_attr = f"{component}_paid"
                setattr(line, paid_attr, getattr(line, paid_attr) + getattr(planned, component))
            self._refresh_paid_flag(line, today)
            self.db.add(
                PaymentAllocation(
                    payment_id=payment.id,
                    schedule_line_id=line.id,
                    penalty_amount=planned.penalty,
                    fees_amount=planned.fees,
                    interest_amount=planned.interest,
                    principal_amount=planned.principal,
                )
            )

        if plan.overpayment > ZERO:
            self.db.add(
                OverpaymentCredit(
                    loan_id=loan.id,
                    payment_id=payment.id,
                    intent_id=intent.id,
                    amount=plan.overpayment,
                    created_at=self._clock(),
                )
            )

        paid_off = bool(lines) and all(line.is_paid for line in lines)
        if paid_off and loan.status != "PAID_OFF":
            loan.status = "PAID_OFF"
            loan.updated_at = self._clock()

        self.db.flush()
        logger.info(
            "Allocated %s to loan %s (penalty=%s fees=%s interest=%s principal=%s overpayment=%s)",
            plan.amount,
            loan.loan_number,
            payment.penalty_amount,
            payment.fees_amount,
            payment.interest_amount,
            payment.principal_amount,
            payment.overpayment_amount,
            extra={
                "intent_id": str(intent.id),
                "loan_id": str(loan.id),
                "payment_id": str(payment.id),
            },
        )

        return AllocationResult(
            payment_id=payment.id,
            intent_id=intent.id,
            loan_id=loan.id,
            amount=plan.amount,
            penalty_amount=payment.penalty_amount,
            fees_amount=payment.fees_amount,
            interest_amount=payment.interest_amount,
            principal_amount=payment.principal_amount,
            overpayment_amount=plan.overpayment,
            lines=plan.lines,
            receipt_number=payment.receipt_number,
            loan_paid_off=paid_off,
        )

    @staticmethod
    def _refresh_paid_flag(line: LoanScheduleLine, today: date) -> None:
        was_paid = line.is_paid
        line.is_paid = line.total_paid >= line.total_due
        if line.is_paid and not was_paid:
            line.paid_date = today
        elif not line.is_paid:
            line.paid_date = None

    # -------------------------------------------------------------------------
    # Reversal
    # -------------------------------------------------------------------------

    def reverse(self, payment_id: UUID, reversed_by: str, reason: str) -> ReversalResult:
        """Undo exactly the per-line amounts a payment applied.

        Raises:
            NotFoundError: Unknown payment
            ReversalError: Already reversed, or the lines no longer hold the
                amounts this payment applied
        """
        payment = self.db.get(Payment, payment_id, with_for_update=True, populate_existing=True)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        if payment.is_reversed:
            raise ReversalError(f"Payment {payment_id} is already reversed", payment_id=payment_id)

        allocations = list(
            self.db.execute(
                select(PaymentAllocation).where(PaymentAllocation.payment_id == payment.id)
            ).scalars()
        )
        lines = {line.id: line for line in self._locked_lines(payment.loan_id)}

        # Validate everything before touching anything
        for allocation in allocations:
            line = lines.get(allocation.schedule_line_id)
            if line is None:
                raise ReversalError(
                    f"Schedule line {allocation.schedule_line_id} no longer exists",
                    payment_id=payment_id,
                )
            for component in COMPONENTS:
                if getattr(line, f"{component}_paid") < getattr(allocation, f"{component}_amount"):
                    raise ReversalError(
                        f"Line {line.installment_number} {component} no longer holds the "
                        "amount this payment applied (partially reversed)",
                        payment_id=payment_id,
                    )

        credit = self.db.execute(
            select(OverpaymentCredit).where(OverpaymentCredit.payment_id == payment.id)
        ).scalar_one_or_none()
        if credit is not None and credit.is_reversed:
            raise ReversalError(
                f"Overpayment credit for payment {payment_id} is already reversed",
                payment_id=payment_id,
            )
        if (credit.amount if credit else ZERO) != payment.overpayment_amount:
            raise ReversalError(
                f"Overpayment credit for payment {payment_id} does not match the payment",
                payment_id=payment_id,
            )

        today = self._clock().date()
        for allocation in allocations:
            line = lines[allocation.schedule_line_id]
            for component in COMPONENTS:
                paid_attr = f"{component}_paid"
                setattr(
                    line,
                    paid_attr,
                    getattr(line, paid_attr) - getattr(allocation, f"{component}_amount"),
                )
            self._refresh_paid_flag(line, today)

        overpayment_reversed = ZERO
        if credit is not None:
            credit.is_reversed = True
            overpayment_reversed = credit.amount

        now = self._clock()
        payment.is_reversed = True
        payment.reversed_at = now
        payment.reversed_by = reversed_by
        payment.reversal_reason = reason

        loan = self.db.get(Loan, payment.loan_id, with_for_update=True, populate_existing=True)
        reopened = False
        if loan is not None and loan.status == "PAID_OFF":
            if not all(line.is_paid for line in lines.values()):
                loan.status = "ACTIVE"
                loan.updated_at = now
                reopened = True

        self.db.flush()
        logger.info(
            "Reversed payment %s (%s) by %s: %s",
            payment.receipt_number,
            payment.amount,
            reversed_by,
            reason,
            extra={"payment_id": str(payment.id), "loan_id": str(payment.loan_id)},
        )
        return ReversalResult(
            payment_id=payment.id,
            loan_id=payment.loan_id,
            amount=payment.amount,
            overpayment_reversed=overpayment_reversed,
            loan_reopened=reopened,
        )

    # -------------------------------------------------------------------------
    # Dead letters and balances
    # -------------------------------------------------------------------------

    def dead_letter(self, intent: PaymentIntent, reason: str) -> AllocationDeadLetter:
        """Park confirmed money that could not be allocated.

        One dead letter per intent; a repeated failure updates it.
        """
        existing = self.db.execute(
            select(AllocationDeadLetter).where(AllocationDeadLetter.intent_id == intent.id)
        ).scalar_one_or_none()
        if existing is not None:
            existing.reason = reason[:255]
            existing.loan_id = intent.loan_id
            if existing.status == "OPEN":
                existing.attempts += 1
            self.db.flush()
            return existing

        dead_letter = AllocationDeadLetter(
            intent_id=intent.id,
            loan_id=intent.loan_id,
            reason=reason[:255],
            status="OPEN",
            attempts=1,
            created_at=self._clock(),
        )
        self.db.add(dead_letter)
        self.db.flush()
        logger.warning(
            "Allocation for intent %s dead-lettered: %s",
            intent.internal_reference,
            reason,
            extra={"intent_id": str(intent.id), "provider": intent.provider},
        )
        return dead_letter

    def resolve_dead_letter(
        self,
        dead_letter: AllocationDeadLetter,
        payment_id: UUID,
        resolved_by: str,
    ) -> None:
        dead_letter.status = "RESOLVED"
        dead_letter.payment_id = payment_id
        dead_letter.resolved_by = resolved_by
        dead_letter.resolved_at = self._clock()
        self.db.flush()

    def loan_balance(self, loan_id: UUID) -> LoanBalance:
        """Outstanding dues by component plus available overpayment credit.

        Raises:
            NotFoundError: Unknown loan
        """
        if self.db.get(Loan, loan_id) is None:
            raise NotFoundError("Loan", loan_id)

        lines = [
            LineBalance.from_line(line)
            for line in self.db.execute(
                select(LoanScheduleLine)
                .where(LoanScheduleLine.loan_id == loan_id)
                .order_by(LoanScheduleLine.due_date, LoanScheduleLine.installment_number)
            ).scalars()
        ]
        balance = LoanBalance(loan_id=loan_id, lines=lines)
        for line in lines:
            balance.penalty += line.outstanding("penalty")
            balance.fees += line.outstanding("fees")
            balance.interest += line.outstanding("interest")
            balance.principal += line.outstanding("principal")
            if line.total_outstanding > ZERO:
                balance.open_lines += 1

        credit = self.db.execute(
            select(func.coalesce(func.sum(OverpaymentCredit.amount), 0)).where(
                OverpaymentCredit.loan_id == loan_id,
                OverpaymentCredit.is_reversed.is_(False),
            )
        ).scalar_one()
        balance.credit = quantize(Decimal(str(credit)))
        return balance
