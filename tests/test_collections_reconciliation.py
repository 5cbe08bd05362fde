import uuid
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from app.models.billing import (
    AttemptStatus,
    ChargeStatus,
    FiscalDocumentStatus,
)
from app.models.event_store import BillingEvent
from app.services.collections import (
    close_charge_as_paid,
    dunning,
    fiscal_issuer,
    issue_fiscal_document,
)
from app.services.collections.errors import ChargeNotFound
from app.services.events.types import EventType


def test_close_charge_as_paid_runs_once(db_session, anchored_charge):
    paid_at = datetime(2026, 3, 12, 15, 0, tzinfo=UTC)

    first = close_charge_as_paid(
        db_session,
        anchored_charge.id,
        amount=Decimal("100000"),
        paid_at=paid_at,
        source_ref="TRF-1",
        channel="transfer",
        actor="cashier",
    )
    second = close_charge_as_paid(db_session, anchored_charge.id, source_ref="TRF-2")
    db_session.commit()

    assert first.closed is True
    assert first.canceled_attempts == 3
    assert first.amount_ars_paid == Decimal("100000.00")
    assert second.closed is False
    assert second.already_paid is True
    assert second.paid_via_channel == "transfer"

    db_session.expire_all()
    assert anchored_charge.status == ChargeStatus.paid
    assert anchored_charge.paid_reference == "TRF-1"
    assert {attempt.status for attempt in anchored_charge.attempts} == {AttemptStatus.canceled}
    events = (
        db_session.query(BillingEvent)
        .filter(BillingEvent.charge_id == anchored_charge.id)
        .filter(BillingEvent.event_type == EventType.charge_paid.value)
        .all()
    )
    assert len(events) == 1
    assert events[0].actor == "cashier"


def test_close_unknown_charge(db_session):
    with pytest.raises(ChargeNotFound):
        close_charge_as_paid(db_session, uuid.uuid4())


def test_dunning_stage_only_moves_forward(db_session, anchored_charge):
    first, second, _ = anchored_charge.attempts

    assert dunning.on_attempt_rejected(db_session, anchored_charge.id, second.id).stage == 2
    result = dunning.on_attempt_rejected(db_session, anchored_charge.id, first.id)

    assert result.stage == 2
    assert result.final_rejection is False
    assert anchored_charge.dunning_stage == 2


def test_final_rejection_is_reported(db_session, anchored_charge):
    for attempt in anchored_charge.attempts:
        attempt.status = AttemptStatus.rejected
    db_session.flush()
    last = anchored_charge.attempts[-1]

    result = dunning.on_attempt_rejected(
        db_session, anchored_charge.id, last.id, reason_code="51", reason_text="FONDOS_INSUFICIENTES"
    )

    assert result.final_rejection is True
    assert result.reason == "FONDOS_INSUFICIENTES"


def test_rejection_for_foreign_attempt_is_ignored(db_session, anchored_charge):
    result = dunning.on_attempt_rejected(db_session, anchored_charge.id, uuid.uuid4())

    assert result.reason == "attempt_not_found"
    assert anchored_charge.dunning_stage == 0


def test_paid_charge_keeps_its_dunning_stage(db_session, anchored_charge):
    close_charge_as_paid(db_session, anchored_charge.id)

    assert dunning.advance_stage(db_session, anchored_charge, 3) == 0


def test_mock_fiscal_issue_is_idempotent(db_session, anchored_charge):
    close_charge_as_paid(db_session, anchored_charge.id)

    issued = issue_fiscal_document(db_session, anchored_charge.id)
    again = issue_fiscal_document(db_session, anchored_charge.id)

    assert issued.status == FiscalDocumentStatus.issued
    assert issued.already_issued is False
    assert issued.issuer_reference.isdigit()
    assert again.already_issued is True
    assert again.document_id == issued.document_id


def test_real_fiscal_mode_records_retryable_failure(
    db_session, anchored_charge, collections_setting
):
    collections_setting("fiscal_mode", "real")

    first = issue_fiscal_document(db_session, anchored_charge.id, "INVOICE_A")
    second = issue_fiscal_document(db_session, anchored_charge.id, "INVOICE_A")

    assert first.status == FiscalDocumentStatus.failed
    assert first.retry_count == 1
    assert second.retry_count == 2
    assert second.error_message == "Tax authority issuer is not available"


def test_fiscal_autorun_disabled_by_default(db_session, anchored_charge):
    result = fiscal_issuer.autorun_for_paid_charges(db_session, [anchored_charge.id])

    assert result.enabled is False
    assert result.issued == 0


def test_fiscal_issue_unknown_charge(db_session):
    with pytest.raises(ChargeNotFound):
        issue_fiscal_document(db_session, uuid.uuid4())
