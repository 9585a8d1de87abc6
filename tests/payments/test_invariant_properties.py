"""Property-based tests for repayment invariants.

These tests use hypothesis to generate schedules, amounts and delivery
sequences and verify that:
1. Every unit of money is either allocated or credited, never both or neither
2. No schedule component is ever paid beyond its due
3. Reversal restores the schedule exactly
4. Any number of deliveries of one event moves money at most once
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

from hypothesis import given, settings, strategies as st
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from loan_engine.database import make_engine, make_session_factory
from loan_engine.models import Base, Loan, LoanScheduleLine, Payment
from loan_engine.payments.config import create_sandbox_config
from loan_engine.payments.facade import LoanPayments
from loan_engine.payments.model import (
    Channel,
    EventSource,
    EventStatus,
    IntentState,
    Provider,
    ProviderEvent,
    TransitionEvidence,
)
from loan_engine.payments.services.allocation import (
    COMPONENTS,
    AllocationEngine,
    LineBalance,
    plan_waterfall,
)
from loan_engine.payments.services.ledger import LedgerService
from loan_engine.payments.services.reconciliation import ReconcileStatus

ZERO = Decimal("0")

money = st.decimals(
    min_value=Decimal("0"),
    max_value=Decimal("20000"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)
positive_money = st.decimals(
    min_value=Decimal("0.01"),
    max_value=Decimal("100000"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)
# (penalty, fees, interest, principal) per installment
schedules = st.lists(st.tuples(money, money, money, money), min_size=1, max_size=6)


def _balances(schedule) -> list[LineBalance]:
    first_due = date(2026, 1, 31)
    return [
        LineBalance(
            line_id=uuid4(),
            due_date=first_due + timedelta(days=30 * number),
            installment_number=number + 1,
            penalty_due=penalty,
            fees_due=fees,
            interest_due=interest,
            principal_due=principal,
        )
        for number, (penalty, fees, interest, principal) in enumerate(schedule)
    ]


@contextmanager
def _database() -> Iterator[Session]:
    """A throwaway in-memory database; hypothesis reruns the body many times."""
    engine = make_engine("sqlite://")
    Base.metadata.create_all(engine)
    try:
        with make_session_factory(engine)() as session:
            yield session
    finally:
        engine.dispose()


def _loan(session: Session, schedule) -> Loan:
    loan = Loan(loan_number="LN000001", borrower_id=uuid4(), currency="KES", status="ACTIVE")
    session.add(loan)
    session.flush()
    for line in _balances(schedule):
        session.add(
            LoanScheduleLine(
                loan_id=loan.id,
                installment_number=line.installment_number,
                due_date=line.due_date,
                penalty_due=line.penalty_due,
                fees_due=line.fees_due,
                interest_due=line.interest_due,
                principal_due=line.principal_due,
            )
        )
    session.commit()
    return loan


def _paid(session: Session, loan: Loan) -> list[tuple]:
    lines = session.execute(
        select(LoanScheduleLine)
        .where(LoanScheduleLine.loan_id == loan.id)
        .order_by(LoanScheduleLine.installment_number)
        .execution_options(populate_existing=True)
    ).scalars()
    return [
        (l.penalty_paid, l.fees_paid, l.interest_paid, l.principal_paid, l.is_paid, l.paid_date)
        for l in lines
    ]


class TestWaterfallInvariants:
    """Invariants of the pure waterfall planner."""

    @given(amount=positive_money, schedule=schedules)
    @settings(max_examples=200)
    def test_money_is_conserved(self, amount: Decimal, schedule):
        """allocated + overpayment == amount, always."""
        plan = plan_waterfall(amount, _balances(schedule))

        assert plan.allocated + plan.overpayment == amount
        assert plan.overpayment >= ZERO

    @given(amount=positive_money, schedule=schedules)
    @settings(max_examples=200)
    def test_no_component_is_overpaid(self, amount: Decimal, schedule):
        balances = _balances(schedule)
        by_id = {line.line_id: line for line in balances}

        plan = plan_waterfall(amount, balances)

        for allocation in plan.lines:
            line = by_id[allocation.line_id]
            for component in COMPONENTS:
                assert ZERO <= getattr(allocation, component) <= line.outstanding(component)

    @given(amount=positive_money, schedule=schedules)
    @settings(max_examples=200)
    def test_credit_only_when_everything_is_paid(self, amount: Decimal, schedule):
        balances = _balances(schedule)
        outstanding = sum(
            (line.outstanding(c) for line in balances for c in COMPONENTS), ZERO
        )

        plan = plan_waterfall(amount, balances)

        if plan.overpayment > ZERO:
            assert plan.allocated == outstanding
        else:
            assert plan.allocated == amount

    @given(amount=positive_money, schedule=schedules)
    @settings(max_examples=200)
    def test_earlier_dues_are_covered_first(self, amount: Decimal, schedule):
        """Nothing reaches a component while an earlier one is still owed."""
        balances = _balances(schedule)
        applied = {a.line_id: a for a in plan_waterfall(amount, balances).lines}

        still_owed = False
        for line in balances:
            allocation = applied.get(line.line_id)
            for component in COMPONENTS:
                taken = getattr(allocation, component) if allocation else ZERO
                if still_owed:
                    assert taken == ZERO
                if taken < line.outstanding(component):
                    still_owed = True


class TestAllocationRoundTrip:
    """Allocate then reverse against a real schedule."""

    @given(amount=positive_money, schedule=schedules)
    @settings(max_examples=25, deadline=None)
    def test_reverse_restores_schedule(self, amount: Decimal, schedule):
        with _database() as session:
            loan = _loan(session, schedule)
            before = _paid(session, loan)

            ledger = LedgerService(session)
            intent = ledger.create_intent(
                provider=Provider.MPESA,
                channel=Channel.PUSH,
                amount=amount,
                currency="KES",
                payer_account_ref="254712345678",
                account_reference=loan.loan_number,
                loan_id=loan.id,
                borrower_id=loan.borrower_id,
            )
            ledger.transition(
                intent.id, IntentState.CONFIRMED, TransitionEvidence(source=EventSource.CALLBACK)
            )
            engine = AllocationEngine(session)
            result = engine.allocate(ledger.get(intent.id))
            session.commit()

            assert result.amount == amount
            assert (
                result.penalty_amount
                + result.fees_amount
                + result.interest_amount
                + result.principal_amount
                + result.overpayment_amount
            ) == amount

            engine.reverse(result.payment_id, "ops-1", "property check")
            session.commit()

            assert _paid(session, loan) == before
            assert engine.loan_balance(loan.id).credit == ZERO
            assert session.get(Loan, loan.id).status == "ACTIVE"


class TestDeliveryIdempotence:
    """Redelivered and contradicting provider events."""

    @given(
        deliveries=st.lists(
            st.sampled_from([EventStatus.SUCCESS, EventStatus.FAILED]),
            min_size=1,
            max_size=6,
        )
    )
    @settings(max_examples=30, deadline=None)
    def test_first_terminal_event_decides(self, deliveries: list[EventStatus]):
        """Any delivery sequence yields one decision and at most one Payment."""
        with _database() as session:
            loan = _loan(session, [(Decimal("500"), Decimal("200"), Decimal("800"), Decimal("3000"))])
            ledger = LedgerService(session)
            intent = ledger.create_intent(
                provider=Provider.MPESA,
                channel=Channel.PUSH,
                amount=Decimal("5000"),
                currency="KES",
                payer_account_ref="254712345678",
                account_reference=loan.loan_number,
                loan_id=loan.id,
                borrower_id=loan.borrower_id,
            )
            ledger.bind_external_reference(intent.id, "ws_CO_1")
            session.commit()

            payments = LoanPayments(session, create_sandbox_config(), providers={})
            outcomes = [
                payments.apply_event(
                    ProviderEvent(
                        provider=Provider.MPESA,
                        external_reference="ws_CO_1",
                        status=status,
                        source=EventSource.CALLBACK,
                        amount=Decimal("5000") if status is EventStatus.SUCCESS else None,
                        receipt="NLJ7RT61SV" if status is EventStatus.SUCCESS else None,
                    )
                )
                for status in deliveries
            ]

            first = deliveries[0]
            expected_state = IntentState.CONFIRMED if first is EventStatus.SUCCESS else IntentState.FAILED
            assert outcomes[0].status is ReconcileStatus.APPLIED
            for status, outcome in zip(deliveries[1:], outcomes[1:]):
                expected = ReconcileStatus.DUPLICATE if status is first else ReconcileStatus.CONFLICT
                assert outcome.status is expected

            assert ledger.get(intent.id).state == expected_state.value
            payment_count = session.execute(select(func.count()).select_from(Payment)).scalar_one()
            assert payment_count == (1 if first is EventStatus.SUCCESS else 0)
