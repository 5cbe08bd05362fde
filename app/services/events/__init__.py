"""Billing event log.

Usage:
    from app.services.events import emit_event
    from app.services.events.types import EventType

    # In a service after a state change, before the commit:
    emit_event(
        db,
        EventType.charge_paid,
        {"charge_id": str(charge.id)},
        tenant_id=charge.tenant_id,
        charge_id=charge.id,
    )
"""

from app.services.events.dispatcher import emit_event, get_dispatcher
from app.services.events.types import Event, EventType

__all__ = ["emit_event", "get_dispatcher", "Event", "EventType"]
