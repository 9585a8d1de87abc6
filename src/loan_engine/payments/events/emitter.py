"""In-process publishing of payment domain events.

Handlers subscribe by event class, by category or to everything. A failing
handler is logged and skipped. Services never emit directly: they hand
their events to an ``EventBatch`` that publishes once the database
transaction has committed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar, runtime_checkable

from loan_engine.payments.events.types import DomainEvent, EventCategory

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=DomainEvent)


@runtime_checkable
class EventHandler(Protocol):
    """Protocol for event handlers."""

    def __call__(self, event: DomainEvent) -> None:
        ...


@dataclass
class HandlerRegistration:
    """Registration of an event handler."""

    handler: EventHandler
    event_types: set[str] | None  # None = all events
    categories: set[EventCategory] | None  # None = all categories


class EventEmitter:
    """Synchronous event emitter.

    Usage:
        emitter = EventEmitter()
        emitter.on(PaymentConfirmed, send_receipt_sms)
        emitter.on_category(EventCategory.RECONCILIATION, page_finance)

        with emitter.batch() as batch:
            batch.add(event1)
            batch.add(event2)
            session.commit()
        # Events emitted only if the block exited cleanly
    """

    def __init__(self) -> None:
        self._handlers: list[HandlerRegistration] = []

    def on(self, event_type: type[T] | list[type[T]], handler: EventHandler) -> None:
        """Register handler for specific event type(s)."""
        if isinstance(event_type, list):
            types = {t.__name__ for t in event_type}
        else:
            types = {event_type.__name__}
        self._handlers.append(HandlerRegistration(handler, types, None))

    def on_category(
        self,
        category: EventCategory | list[EventCategory],
        handler: EventHandler,
    ) -> None:
        """Register handler for event category(ies)."""
        cats = set(category) if isinstance(category, list) else {category}
        self._handlers.append(HandlerRegistration(handler, None, cats))

    def on_all(self, handler: EventHandler) -> None:
        self._handlers.append(HandlerRegistration(handler, None, None))

    def off(self, handler: EventHandler) -> None:
        self._handlers = [reg for reg in self._handlers if reg.handler is not handler]

    def emit(self, event: DomainEvent) -> list[Exception]:
        """Emit an event to all matching handlers.

        Returns list of any exceptions raised by handlers.
        """
        errors: list[Exception] = []
        for reg in self._handlers:
            if reg.event_types and event.event_type not in reg.event_types:
                continue
            if reg.categories and event.category not in reg.categories:
                continue
            try:
                reg.handler(event)
            except Exception as e:
                logger.exception("Handler %s failed for event %s", reg.handler, event.event_type)
                errors.append(e)
        return errors

    def emit_all(self, events: list[DomainEvent]) -> list[Exception]:
        errors: list[Exception] = []
        for event in events:
            errors.extend(self.emit(event))
        return errors

    def batch(self) -> EventBatch:
        """Collect events and emit them when the context exits cleanly."""
        return EventBatch(self)


class EventBatch:
    """Context manager for batching events.

    Each batch holds its own list, so concurrent requests sharing one
    emitter never see each other's events.
    """

    def __init__(self, emitter: EventEmitter) -> None:
        self._emitter = emitter
        self._events: list[DomainEvent] = []
        self._errors: list[Exception] = []

    def __enter__(self) -> EventBatch:
        self._events = []
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        events, self._events = self._events, []
        if exc_type is None:
            self._errors = self._emitter.emit_all(events)
        elif events:
            logger.info("Discarding %d events from failed operation", len(events))

    def add(self, event: DomainEvent) -> None:
        self._events.append(event)

    def extend(self, events: list[DomainEvent]) -> None:
        self._events.extend(events)

    @property
    def pending(self) -> list[DomainEvent]:
        return list(self._events)

    @property
    def errors(self) -> list[Exception]:
        """Errors from handler execution (available after context exits)."""
        return self._errors
