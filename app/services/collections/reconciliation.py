"""Charge closure and attempt transitions driven by bank outcomes.

``close_charge_as_paid`` is the only code path that moves a charge to PAID.
Every function here works inside the caller's transaction and only flushes;
the calling flow decides when to commit.
"""

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from app.models.billing import (
    OPEN_ATTEMPT_STATUSES,
    Attempt,
    AttemptStatus,
    BillingCycle,
    BillingCycleStatus,
    Charge,
    ChargeStatus,
    ReconciliationStatus,
)
from app.schemas.collections import ClosureResult
from app.services.collections.adapters import InboundRow
from app.services.collections.errors import ChargeNotFound
from app.services.common import get_by_id, round_money, utcnow
from app.services.events import emit_event
from app.services.events.types import EventType

logger = logging.getLogger(__name__)

PAID_CURRENCY = "ARS"


def _closure_from_charge(charge: Charge, closed: bool, canceled: int = 0) -> ClosureResult:
    return ClosureResult(
        charge_id=charge.id,
        closed=closed,
        already_paid=not closed,
        paid_via_channel=charge.paid_via_channel,
        paid_at=charge.paid_at,
        amount_ars_paid=charge.amount_ars_paid,
        canceled_attempts=canceled,
    )


class ReconciliationEngine:
    @staticmethod
    def close_charge_as_paid(
        db: Session,
        charge_id,
        amount: Decimal | None = None,
        paid_at: datetime | None = None,
        source_ref: str | None = None,
        channel: str | None = None,
        actor: str | None = None,
        source: str = "system",
    ) -> ClosureResult:
        """Close a charge as paid exactly once.

        A charge that is already PAID is returned untouched with
        ``already_paid=True``. Otherwise the charge is marked PAID and MATCHED,
        every open sibling attempt is canceled, the cycle is marked PAID and a
        single ``charge.paid`` event is recorded.
        """
        charge = get_by_id(db, Charge, charge_id, with_for_update=True)
        if not charge:
            raise ChargeNotFound("Charge not found", charge_id=str(charge_id))
        if charge.status == ChargeStatus.paid:
            return _closure_from_charge(charge, closed=False)

        paid_at = paid_at or utcnow()
        paid_amount = round_money(amount if amount is not None else charge.amount_ars_due)

        charge.status = ChargeStatus.paid
        charge.amount_ars_paid = paid_amount
        charge.paid_at = paid_at
        charge.paid_reference = source_ref
        charge.paid_currency = PAID_CURRENCY
        charge.paid_via_channel = channel
        charge.reconciliation_status = ReconciliationStatus.matched
        charge.last_dunning_action_at = paid_at

        canceled = (
            db.query(Attempt)
            .filter(Attempt.charge_id == charge.id)
            .filter(Attempt.status.in_(OPEN_ATTEMPT_STATUSES))
            .update(
                {
                    Attempt.status: AttemptStatus.canceled,
                    Attempt.processed_at: paid_at,
                    Attempt.notes: "Canceled: charge paid",
                },
                synchronize_session="fetch",
            )
        )

        if charge.cycle_id:
            cycle = db.get(BillingCycle, charge.cycle_id)
            if cycle:
                cycle.status = BillingCycleStatus.paid

        emit_event(
            db,
            EventType.charge_paid,
            {
                "paid_at": paid_at,
                "amount": str(paid_amount),
                "channel": channel,
                "source_ref": source_ref,
                "source": source,
                "canceled_attempts": canceled,
            },
            actor=actor,
            tenant_id=charge.tenant_id,
            subscription_id=charge.subscription_id,
            charge_id=charge.id,
        )
        db.flush()
        logger.info(f"Charge {charge.id} closed as paid via {channel} ({paid_amount})")
        return ClosureResult(
            charge_id=charge.id,
            closed=True,
            already_paid=False,
            paid_via_channel=channel,
            paid_at=paid_at,
            amount_ars_paid=paid_amount,
            canceled_attempts=canceled,
        )

    @staticmethod
    def _apply_processor_fields(attempt: Attempt, row: InboundRow, processed_at: datetime) -> None:
        attempt.processed_at = processed_at
        attempt.processor_result_code = row.result_code
        attempt.processor_result_message = row.message
        attempt.processor_trace_id = row.trace_id
        attempt.processor_settlement_date = row.settled_at
        attempt.processor_raw_payload = row.raw or None

    @staticmethod
    def mark_attempt_paid(attempt: Attempt, row: InboundRow, processed_at: datetime | None = None) -> None:
        ReconciliationEngine._apply_processor_fields(attempt, row, processed_at or utcnow())
        attempt.status = AttemptStatus.paid
        attempt.paid_reference = row.paid_reference

    @staticmethod
    def mark_attempt_rejected(
        attempt: Attempt,
        charge: Charge,
        row: InboundRow,
        reason: str | None = None,
        processed_at: datetime | None = None,
    ) -> None:
        """Attempt goes REJECTED; the charge stays open and becomes PAST_DUE/UNMATCHED."""
        ReconciliationEngine._apply_processor_fields(attempt, row, processed_at or utcnow())
        attempt.status = AttemptStatus.rejected
        attempt.rejection_code = row.result_code
        attempt.rejection_reason = reason or row.message
        if charge.status != ChargeStatus.paid:
            charge.reconciliation_status = ReconciliationStatus.unmatched
            if charge.status != ChargeStatus.canceled:
                charge.status = ChargeStatus.past_due

    @staticmethod
    def mark_attempt_failed(
        attempt: Attempt,
        charge: Charge | None,
        row: InboundRow,
        processed_at: datetime | None = None,
    ) -> None:
        """Attempt goes FAILED; the charge only gets reconciliation status ERROR."""
        ReconciliationEngine._apply_processor_fields(attempt, row, processed_at or utcnow())
        attempt.status = AttemptStatus.failed
        attempt.notes = row.error or row.message
        if charge and charge.status != ChargeStatus.paid:
            charge.reconciliation_status = ReconciliationStatus.error


reconciliation = ReconciliationEngine()


def close_charge_as_paid(
    db: Session,
    charge_id,
    amount: Decimal | None = None,
    paid_at: datetime | None = None,
    source_ref: str | None = None,
    channel: str | None = None,
    actor: str | None = None,
) -> ClosureResult:
    return ReconciliationEngine.close_charge_as_paid(
        db, charge_id, amount=amount, paid_at=paid_at, source_ref=source_ref,
        channel=channel, actor=actor,
    )
