"""Event types and data structures for the billing event log.

Event naming convention: {entity}.{action}
"""

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from app.services.common import to_json_safe


class EventType(enum.Enum):
    """All event types emitted by the collections engine."""

    # Anchor runs
    anchor_run_processed = "anchor_run.processed"

    # Charges
    charge_created = "charge.created"
    charge_paid = "charge.paid"
    charge_rejected = "charge.rejected"
    late_duplicate_payment = "charge.late_duplicate_payment"

    # Direct-debit batches
    presentment_batch_prepared = "presentment_batch.prepared"
    presentment_batch_exported = "presentment_batch.exported"
    response_batch_imported = "response_batch.imported"

    # Fiscal documents
    fiscal_document_issued = "fiscal_document.issued"
    fiscal_document_failed = "fiscal_document.failed"


@dataclass
class Event:
    """Represents an event that occurred in the collections engine."""

    event_type: EventType
    payload: dict[str, Any]
    event_id: UUID = field(default_factory=uuid4)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Context fields - optional, used for routing and filtering
    actor: str | None = None
    tenant_id: UUID | None = None
    subscription_id: UUID | None = None
    charge_id: UUID | None = None
    batch_id: UUID | None = None

    def json_payload(self) -> dict[str, Any]:
        """Payload with UUIDs, dates and decimals turned into JSON-safe values."""
        return to_json_safe(self.payload)

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary for JSON serialization."""
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type.value,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": self.json_payload(),
            "context": {
                "actor": self.actor,
                "tenant_id": str(self.tenant_id) if self.tenant_id else None,
                "subscription_id": str(self.subscription_id) if self.subscription_id else None,
                "charge_id": str(self.charge_id) if self.charge_id else None,
                "batch_id": str(self.batch_id) if self.batch_id else None,
            },
        }
