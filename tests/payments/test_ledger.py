"""Tests for LedgerService - compare-and-swap intent state.

Tests verify:
1. Intents are created PENDING with a reference assigned up front
2. Exactly one transition out of PENDING wins
3. Late settlement of an expired intent happens once
4. External references bind once
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.orm import Session

from loan_engine.models import PaymentIntent
from loan_engine.payments.errors import IntentNotFoundError, ValidationError
from loan_engine.payments.model import (
    Channel,
    EventSource,
    IntentState,
    Provider,
    TransitionEvidence,
)
from loan_engine.payments.services.ledger import LedgerService
from loan_engine.payments.services.state_machine import InvalidTransitionError

CALLBACK = TransitionEvidence(source=EventSource.CALLBACK, result_code="0", receipt="NLJ7RT61SV")


def _create(ledger: LedgerService, loan=None, provider=Provider.MPESA, amount="4500.00") -> PaymentIntent:
    channel = {Provider.MPESA: Channel.PUSH, Provider.AIRTEL: Channel.PULL, Provider.BANK: Channel.MANUAL}
    return ledger.create_intent(
        provider=provider,
        channel=channel[provider],
        amount=Decimal(amount),
        currency="KES",
        payer_account_ref="254712345678",
        account_reference=loan.loan_number if loan else None,
        loan_id=loan.id if loan else None,
        borrower_id=loan.borrower_id if loan else None,
    )


class TestIntentCreation:
    """Test intent creation."""

    def test_create_intent_pending(self, session: Session, make_loan):
        """New intents are PENDING with a prefixed internal reference."""
        loan = make_loan()
        ledger = LedgerService(session)

        intent = _create(ledger, loan)

        assert intent.state == "PENDING"
        assert intent.internal_reference.startswith("MPE")
        assert intent.external_reference is None
        assert intent.version == 1

    def test_create_intent_rejects_non_positive(self, session: Session):
        ledger = LedgerService(session)
        with pytest.raises(ValueError, match="Amount must be positive"):
            _create(ledger, amount="0")

    def test_get_unknown_raises(self, session: Session):
        with pytest.raises(IntentNotFoundError):
            LedgerService(session).get(uuid4())


class TestTransition:
    """Test compare-and-swap transitions."""

    def test_first_transition_wins(self, session: Session, make_loan, clock):
        """PENDING -> CONFIRMED records the evidence and bumps the version."""
        ledger = LedgerService(session, clock=clock)
        intent = _create(ledger, make_loan())

        result = ledger.transition(intent.id, IntentState.CONFIRMED, CALLBACK)

        assert result.won is True
        assert result.previous_state is IntentState.PENDING
        assert result.state is IntentState.CONFIRMED
        refreshed = ledger.get(intent.id)
        assert refreshed.version == 2
        assert refreshed.provider_receipt == "NLJ7RT61SV"
        assert refreshed.confirmed_amount == Decimal("4500.00")
        assert refreshed.confirmed_at == clock()

    def test_confirmed_amount_from_evidence(self, session: Session, make_loan):
        ledger = LedgerService(session)
        intent = _create(ledger, make_loan())

        ledger.transition(
            intent.id,
            IntentState.CONFIRMED,
            TransitionEvidence(source=EventSource.CALLBACK, amount=Decimal("4000.00")),
        )

        assert ledger.get(intent.id).confirmed_amount == Decimal("4000.00")

    def test_duplicate_transition_is_noop(self, session: Session, make_loan):
        """A second CONFIRMED changes nothing."""
        ledger = LedgerService(session)
        intent = _create(ledger, make_loan())
        ledger.transition(intent.id, IntentState.CONFIRMED, CALLBACK)

        again = ledger.transition(intent.id, IntentState.CONFIRMED, CALLBACK)

        assert again.won is False
        assert again.was_noop is True
        assert again.state is IntentState.CONFIRMED
        assert ledger.get(intent.id).version == 2

    def test_terminal_state_is_never_overwritten(self, session: Session, make_loan):
        """FAILED after CONFIRMED loses and the intent stays CONFIRMED."""
        ledger = LedgerService(session)
        intent = _create(ledger, make_loan())
        ledger.transition(intent.id, IntentState.CONFIRMED, CALLBACK)

        late = ledger.transition(
            intent.id,
            IntentState.FAILED,
            TransitionEvidence(source=EventSource.POLL, result_code="1032"),
        )

        assert late.won is False
        assert late.state is IntentState.CONFIRMED
        assert ledger.get(intent.id).result_code == "0"

    def test_cannot_target_pending(self, session: Session, make_loan):
        ledger = LedgerService(session)
        intent = _create(ledger, make_loan())

        with pytest.raises(InvalidTransitionError):
            ledger.transition(intent.id, IntentState.PENDING, CALLBACK)

    def test_racing_sessions_one_winner(self, session_factory, make_loan):
        """Two sessions confirming and expiring the same intent: one wins."""
        loan = make_loan()
        with session_factory() as setup:
            intent = _create(LedgerService(setup), loan)
            setup.commit()
            intent_id = intent.id

        with session_factory() as first, session_factory() as second:
            confirm = LedgerService(first).transition(intent_id, IntentState.CONFIRMED, CALLBACK)
            first.commit()
            expire = LedgerService(second).transition(
                intent_id,
                IntentState.EXPIRED,
                TransitionEvidence(source=EventSource.SWEEP),
            )
            second.commit()

        assert confirm.won is True
        assert expire.won is False
        assert expire.state is IntentState.CONFIRMED


class TestLateSettlement:
    """Test confirmations arriving after expiry."""

    def test_settle_late_once(self, session: Session, make_loan, clock):
        """The first late confirmation sets late_settled_at; the second does not."""
        ledger = LedgerService(session, clock=clock)
        intent = _create(ledger, make_loan())
        ledger.transition(intent.id, IntentState.EXPIRED, TransitionEvidence(source=EventSource.SWEEP))

        clock.advance(minutes=2)
        first = ledger.settle_late(intent.id, CALLBACK)
        second = ledger.settle_late(intent.id, CALLBACK)

        assert first.won is True
        assert second.won is False
        refreshed = ledger.get(intent.id)
        assert refreshed.state == "EXPIRED"
        assert refreshed.late_settled_at == clock()
        assert refreshed.confirmed_amount == Decimal("4500.00")

    def test_settle_late_requires_expired(self, session: Session, make_loan):
        ledger = LedgerService(session)
        intent = _create(ledger, make_loan())

        result = ledger.settle_late(intent.id, CALLBACK)

        assert result.won is False
        assert ledger.get(intent.id).late_settled_at is None


class TestBindingAndQueries:
    """Test reference binding, loan attachment and pending queries."""

    def test_bind_external_reference_once(self, session: Session, make_loan):
        ledger = LedgerService(session)
        intent = _create(ledger, make_loan())

        assert ledger.bind_external_reference(intent.id, "ws_CO_1") is True
        # Same value again is fine
        assert ledger.bind_external_reference(intent.id, "ws_CO_1") is True
        assert ledger.bind_external_reference(intent.id, "ws_CO_2") is False
        assert ledger.get(intent.id).external_reference == "ws_CO_1"

    def test_find_by_references(self, session: Session, make_loan):
        ledger = LedgerService(session)
        intent = _create(ledger, make_loan())
        ledger.bind_external_reference(intent.id, "ws_CO_1")

        assert ledger.find_by_internal_reference(intent.internal_reference).id == intent.id
        assert ledger.find_by_external_reference(Provider.MPESA, "ws_CO_1").id == intent.id
        assert ledger.find_by_external_reference(Provider.AIRTEL, "ws_CO_1") is None

    def test_attach_loan_once(self, session: Session, make_loan):
        first_loan = make_loan()
        second_loan = make_loan()
        ledger = LedgerService(session)
        intent = _create(ledger)

        assert ledger.attach_loan(intent.id, first_loan.id, first_loan.borrower_id) is True
        assert ledger.attach_loan(intent.id, second_loan.id, second_loan.borrower_id) is False
        assert ledger.get(intent.id).loan_id == first_loan.id

    def test_list_pending_filters(self, session: Session, make_loan, clock):
        """Pending queries filter by channel, age and bound reference, oldest first."""
        loan = make_loan()
        ledger = LedgerService(session, clock=clock)
        old_push = _create(ledger, loan)
        ledger.bind_external_reference(old_push.id, "ws_CO_1")
        clock.advance(minutes=1)
        unbound_push = _create(ledger, loan)
        bank = _create(ledger, loan, provider=Provider.BANK)
        clock.advance(minutes=1)
        done = _create(ledger, loan)
        ledger.transition(done.id, IntentState.FAILED, TransitionEvidence(source=EventSource.POLL))

        pending = ledger.list_pending()
        assert pending[0].id == old_push.id
        assert {i.id for i in pending} == {old_push.id, unbound_push.id, bank.id}

        push_only = ledger.list_pending(channels=[Channel.PUSH, Channel.PULL])
        assert {i.id for i in push_only} == {old_push.id, unbound_push.id}

        bound = ledger.list_pending(require_external_reference=True)
        assert [i.id for i in bound] == [old_push.id]

        aged = ledger.list_pending(created_before=clock() - timedelta(seconds=90))
        assert [i.id for i in aged] == [old_push.id]


class TestListIntents:
    """Test the filtered, paginated operator listing."""

    def test_filters_and_newest_first(self, session: Session, make_loan, clock):
        first_loan = make_loan()
        second_loan = make_loan()
        ledger = LedgerService(session, clock=clock)
        oldest = _create(ledger, first_loan)
        clock.advance(minutes=1)
        airtel = _create(ledger, first_loan, provider=Provider.AIRTEL)
        clock.advance(minutes=1)
        other_loan = _create(ledger, second_loan)
        ledger.transition(other_loan.id, IntentState.CONFIRMED, CALLBACK)

        everything = ledger.list_intents()
        assert [i.id for i in everything.intents] == [other_loan.id, airtel.id, oldest.id]
        assert everything.total == 3

        assert [i.id for i in ledger.list_intents(provider=Provider.AIRTEL).intents] == [airtel.id]
        assert [i.id for i in ledger.list_intents(state=IntentState.CONFIRMED).intents] == [other_loan.id]
        by_loan = ledger.list_intents(loan_id=first_loan.id)
        assert [i.id for i in by_loan.intents] == [airtel.id, oldest.id]
        assert ledger.list_intents(provider=Provider.BANK).total == 0

    def test_pagination(self, session: Session, make_loan, clock):
        loan = make_loan()
        ledger = LedgerService(session, clock=clock)
        created = []
        for _ in range(5):
            created.append(_create(ledger, loan))
            clock.advance(seconds=1)

        second = ledger.list_intents(page=2, limit=2)

        assert [i.id for i in second.intents] == [created[2].id, created[1].id]
        assert second.total == 5
        assert second.total_pages == 3
        assert ledger.list_intents(page=4, limit=2).intents == []

    @pytest.mark.parametrize(
        "page, limit, field",
        [(0, 20, "page"), (1, 0, "limit"), (1, 101, "limit")],
    )
    def test_bad_bounds_rejected(self, session: Session, page, limit, field):
        with pytest.raises(ValidationError) as exc_info:
            LedgerService(session).list_intents(page=page, limit=limit)

        assert exc_info.value.details["field"] == field
