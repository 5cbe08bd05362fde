"""Central event dispatcher for the billing event log.

Events are appended to ``billing_events`` inside the caller's transaction
(flush only, never commit), so an event exists if and only if the state change
that produced it is committed. Registered handlers run after the row is
flushed; a failing handler is logged and never undoes the state change.
"""

import logging
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from app.models.event_store import BillingEvent
from app.services.events.types import Event, EventType

logger = logging.getLogger(__name__)


class EventDispatcher:
    """Persists events and routes them to registered handlers."""

    def __init__(self):
        self._handlers: list = []

    def register_handler(self, handler):
        """Register an event handler exposing ``handle(db, event)``."""
        self._handlers.append(handler)

    def unregister_handler(self, handler):
        if handler in self._handlers:
            self._handlers.remove(handler)

    def dispatch(self, db: Session, event: Event) -> BillingEvent:
        logger.debug(
            f"Dispatching event {event.event_type.value} (id={event.event_id})"
        )

        record = BillingEvent(
            id=event.event_id,
            event_type=event.event_type.value,
            payload=event.json_payload(),
            actor=event.actor,
            tenant_id=event.tenant_id,
            subscription_id=event.subscription_id,
            charge_id=event.charge_id,
            batch_id=event.batch_id,
            created_at=event.occurred_at,
        )
        db.add(record)
        db.flush()

        for handler in self._handlers:
            try:
                handler.handle(db, event)
            except Exception as exc:
                handler_name = handler.__class__.__name__
                logger.exception(
                    f"Handler {handler_name} failed for event "
                    f"{event.event_type.value}: {exc}"
                )
        return record


# Global dispatcher instance
_dispatcher: EventDispatcher | None = None


def get_dispatcher() -> EventDispatcher:
    """Get the global event dispatcher."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = EventDispatcher()
    return _dispatcher


def emit_event(
    db: Session,
    event_type: EventType,
    payload: dict[str, Any],
    *,
    actor: str | None = None,
    tenant_id: UUID | str | None = None,
    subscription_id: UUID | str | None = None,
    charge_id: UUID | str | None = None,
    batch_id: UUID | str | None = None,
) -> Event:
    """Append an event to the billing event log.

    Args:
        db: Database session; the event joins its open transaction
        event_type: The type of event
        payload: Event-specific data
        actor: Who/what triggered the event
        tenant_id: Owning tenant
        subscription_id: Related subscription ID
        charge_id: Related charge ID
        batch_id: Related file batch ID

    Returns:
        The created Event object

    Example:
        emit_event(
            db,
            EventType.charge_paid,
            {"charge_id": str(charge.id), "amount": str(amount)},
            tenant_id=charge.tenant_id,
            charge_id=charge.id,
        )
    """
    # Normalize UUIDs
    def to_uuid(value: UUID | str | None) -> UUID | None:
        if value is None:
            return None
        if isinstance(value, UUID):
            return value
        return UUID(value)

    event = Event(
        event_type=event_type,
        payload=payload,
        actor=actor,
        tenant_id=to_uuid(tenant_id),
        subscription_id=to_uuid(subscription_id),
        charge_id=to_uuid(charge_id),
        batch_id=to_uuid(batch_id),
    )

    get_dispatcher().dispatch(db, event)

    logger.info(
        f"Event emitted: {event_type.value} (id={event.event_id})"
    )

    return event
