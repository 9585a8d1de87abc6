"""Periodic sweep over PENDING intents.

One run:
    1. polls push/pull intents old enough that a callback may have been lost
    2. expires intents older than their provider's timeout
    3. reports bank transfers waiting on a reviewer for too long

Provider polls happen with no transaction open. Each poll result and each
expiry is applied and committed on its own, so a crash mid-sweep loses at
most the intent in flight.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Mapping
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from loan_engine.database import sweep_lock
from loan_engine.models.base import utcnow
from loan_engine.payments.config import SweepConfig
from loan_engine.payments.errors import ProviderError
from loan_engine.payments.events import EventEmitter, EventMetadata, PaymentIntentExpired
from loan_engine.payments.model import (
    Channel,
    EventSource,
    EventStatus,
    IntentState,
    Provider,
    ProviderEvent,
    TransitionEvidence,
)
from loan_engine.payments.providers.base import Clock, PaymentChannelProvider
from loan_engine.payments.services.ledger import LedgerService
from loan_engine.payments.services.reconciliation import ReconcileOutcome

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

    from loan_engine.payments.facade import LoanPayments

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """What one sweep run did."""

    started_at: datetime
    finished_at: datetime | None = None
    polled: int = 0
    poll_errors: int = 0
    outcomes: list[ReconcileOutcome] = field(default_factory=list)
    expired: list[UUID] = field(default_factory=list)
    aged_manual: list[str] = field(default_factory=list)

    @property
    def confirmed(self) -> int:
        return sum(1 for o in self.outcomes if o.state is IntentState.CONFIRMED and o.money_applied)

    def summary(self) -> dict[str, int]:
        return {
            "polled": self.polled,
            "poll_errors": self.poll_errors,
            "resolved": len(self.outcomes),
            "confirmed": self.confirmed,
            "expired": len(self.expired),
            "aged_manual": len(self.aged_manual),
        }


class SweepService:
    """Runs one pass of the sweep against a single session."""

    def __init__(
        self,
        db: Session,
        ledger: LedgerService,
        providers: Mapping[Provider, PaymentChannelProvider],
        apply_event: Callable[[ProviderEvent], ReconcileOutcome],
        config: SweepConfig | None = None,
        event_emitter: EventEmitter | None = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.ledger = ledger
        self.providers = providers
        self._apply_event = apply_event
        self.config = config or SweepConfig()
        self._emitter = event_emitter
        self._clock = clock

    def run_once(self, now: datetime | None = None) -> SweepReport:
        now = now or self._clock()
        report = SweepReport(started_at=now)

        self._poll_phase(now, report)
        self._expire_phase(now, report)
        self._aged_manual_phase(now, report)

        report.finished_at = self._clock()
        logger.info("Sweep finished: %s", report.summary())
        return report

    def _poll_phase(self, now: datetime, report: SweepReport) -> None:
        candidates = [
            (intent.id, Provider(intent.provider), intent.external_reference)
            for intent in self.ledger.list_pending(
                channels=[Channel.PUSH, Channel.PULL],
                created_before=now - timedelta(seconds=self.config.poll_after_seconds),
                require_external_reference=True,
                limit=self.config.batch_size,
            )
        ]
        # Release the read transaction before going to the network
        self.db.commit()

        for intent_id, provider, external_reference in candidates:
            adapter = self.providers.get(provider)
            if adapter is None:
                continue
            report.polled += 1
            try:
                event = adapter.poll(external_reference)
            except ProviderError as exc:
                report.poll_errors += 1
                logger.warning(
                    "Poll of %s failed: %s",
                    external_reference,
                    exc.message,
                    extra={"intent_id": str(intent_id), "provider": provider.value},
                )
                continue
            if event is None or event.status is EventStatus.PENDING:
                continue
            report.outcomes.append(self._apply_event(event))

    def _expire_phase(self, now: datetime, report: SweepReport) -> None:
        for provider, adapter in self.providers.items():
            timeout = adapter.expiry_timeout()
            if timeout is None:
                continue
            stale = [
                intent.id
                for intent in self.ledger.list_pending(
                    providers=[provider],
                    created_before=now - timeout,
                    limit=self.config.batch_size,
                )
            ]
            self.db.commit()

            for intent_id in stale:
                expired = self._expire(intent_id, timeout)
                if expired is not None:
                    report.expired.append(intent_id)

    def _expire(self, intent_id: UUID, timeout: timedelta) -> PaymentIntentExpired | None:
        try:
            result = self.ledger.transition(
                intent_id,
                IntentState.EXPIRED,
                TransitionEvidence(
                    source=EventSource.SWEEP,
                    result_code="EXPIRED",
                    result_description=f"No confirmation within {timeout}",
                ),
            )
            intent = self.ledger.get(intent_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if not result.won:
            return None

        event = PaymentIntentExpired(
            metadata=EventMetadata.create(actor_type="scheduler", timestamp=self._clock()),
            intent_id=intent.id,
            internal_reference=intent.internal_reference,
            provider=intent.provider,
            loan_id=intent.loan_id,
        )
        if self._emitter is not None:
            self._emitter.emit(event)
        return event

    def _aged_manual_phase(self, now: datetime, report: SweepReport) -> None:
        aged = self.ledger.list_pending(
            channels=[Channel.MANUAL],
            created_before=now - timedelta(hours=self.config.manual_review_after_hours),
        )
        self.db.commit()
        for intent in aged:
            report.aged_manual.append(intent.internal_reference)
        if aged:
            logger.warning(
                "%d bank transfers awaiting review for over %dh: %s",
                len(aged),
                self.config.manual_review_after_hours,
                ", ".join(report.aged_manual[:20]),
            )


class SweepRunner:
    """Guarantees a single active sweep and drives the loop.

    In-process overlap is prevented by a non-blocking lock; across processes
    on PostgreSQL by an advisory lock.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        build_payments: Callable[[Session], LoanPayments],
        interval_seconds: int = 60,
        engine: Engine | None = None,
    ):
        self._session_factory = session_factory
        self._build_payments = build_payments
        self._interval = interval_seconds
        self._engine = engine
        self._lock = threading.Lock()

    def run_once(self) -> SweepReport | None:
        """Run one sweep, or return None if another sweep is running."""
        if not self._lock.acquire(blocking=False):
            logger.info("Sweep already running in this process; skipping")
            return None
        try:
            if self._engine is None:
                return self._run()
            with sweep_lock(self._engine) as acquired:
                if not acquired:
                    logger.info("Sweep already running in another process; skipping")
                    return None
                return self._run()
        finally:
            self._lock.release()

    def _run(self) -> SweepReport:
        with self._session_factory() as session:
            return self._build_payments(session).run_sweep()

    def run_forever(self, stop: threading.Event | None = None) -> None:
        stop = stop or threading.Event()
        logger.info("Sweep loop started (every %ss)", self._interval)
        while not stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Sweep run failed")
            stop.wait(self._interval)
