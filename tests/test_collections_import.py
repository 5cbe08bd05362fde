from datetime import date
from decimal import Decimal

import pytest

from app.models.billing import (
    Attempt,
    AttemptStatus,
    BillingCycle,
    BillingCycleStatus,
    ChargeStatus,
    FiscalDocument,
    FiscalDocumentStatus,
    ReconciliationStatus,
)
from app.models.collections import (
    DIRECT_DEBIT_COLLECTION_CHANNEL,
    FileBatch,
    FileBatchDirection,
    FileBatchItemStatus,
    FileBatchStatus,
    FileImportRun,
    FileImportRunStatus,
)
from app.models.event_store import BillingEvent
from app.services.collections import (
    close_charge_as_paid,
    export_presentment_batch,
    import_response_batch,
    prepare_presentment_batch,
)
from app.services.collections.errors import (
    AdapterMismatch,
    BatchAlreadyReconciled,
    BatchNotFound,
    ConsistencyError,
)
from app.services.events.types import EventType
from app.services.object_storage import ObjectStorageError

ANCHOR = date(2026, 3, 10)
HEADER = "external_reference,result,amount,paid_reference,bank_result_code,message,settled_at,trace_id\n"


def _response(*lines: str) -> bytes:
    return (HEADER + "".join(f"{line}\n" for line in lines)).encode("utf-8")


def _first_attempt(db_session, charge):
    return (
        db_session.query(Attempt)
        .filter(Attempt.charge_id == charge.id)
        .filter(Attempt.attempt_no == 1)
        .one()
    )


def _galicia_response(*rows: str, total: str) -> bytes:
    lines = [f"H|GALICIA_PD_RESP|v1.0|0001|PD|20260311|{len(rows)}|{total}|", *rows]
    lines.append(f"T|{len(rows)}|{total}|")
    return ("\n".join(lines) + "\n").encode("latin-1")


def _galicia_batch(db_session):
    prepared = prepare_presentment_batch(db_session, business_date=ANCHOR, adapter="galicia_pd_v1")
    export_presentment_batch(db_session, prepared.batch_id)
    return db_session.get(FileBatch, prepared.batch_id)


def _inbound_count(db_session):
    return (
        db_session.query(FileBatch)
        .filter(FileBatch.direction == FileBatchDirection.inbound)
        .count()
    )


def _runs(db_session, batch):
    return (
        db_session.query(FileImportRun)
        .filter(FileImportRun.outbound_batch_id == batch.id)
        .order_by(FileImportRun.created_at)
        .all()
    )


def test_paid_row_closes_charge_and_reconciles_batch(
    db_session, exported_batch, anchored_charge, batch_storage
):
    reference = _first_attempt(db_session, anchored_charge).external_reference
    data = _response(f"{reference},PAID,108900.00,OP-77,00,ACREDITADO,2026-03-11T12:00:00+00:00,TR-1")

    result = import_response_batch(db_session, exported_batch.id, "resp.csv", data, actor_user_id="ops")

    assert result.already_imported is False
    assert result.summary.total_rows == 1
    assert result.summary.matched_rows == 1
    assert result.summary.paid == 1

    db_session.expire_all()
    charge = anchored_charge
    assert charge.status == ChargeStatus.paid
    assert charge.reconciliation_status == ReconciliationStatus.matched
    assert charge.paid_reference == "OP-77"
    assert charge.paid_via_channel == DIRECT_DEBIT_COLLECTION_CHANNEL
    assert charge.amount_ars_paid == Decimal("108900.00")
    assert [attempt.status for attempt in charge.attempts] == [
        AttemptStatus.paid,
        AttemptStatus.canceled,
        AttemptStatus.canceled,
    ]
    assert db_session.get(BillingCycle, charge.cycle_id).status == BillingCycleStatus.paid

    outbound = db_session.get(FileBatch, exported_batch.id)
    assert outbound.status == FileBatchStatus.reconciled
    assert outbound.total_paid_rows == 1
    assert outbound.items[0].status == FileBatchItemStatus.paid

    inbound = db_session.get(FileBatch, result.inbound_batch_id)
    assert inbound.direction == FileBatchDirection.inbound
    assert inbound.parent_batch_id == outbound.id
    assert inbound.status == FileBatchStatus.imported
    assert batch_storage.download(inbound.storage_key) == data

    paid_events = (
        db_session.query(BillingEvent)
        .filter(BillingEvent.charge_id == charge.id)
        .filter(BillingEvent.event_type == EventType.charge_paid.value)
        .count()
    )
    assert paid_events == 1
    assert [run.status for run in _runs(db_session, outbound)] == [FileImportRunStatus.success]


def test_same_file_twice_is_already_imported(db_session, exported_batch, anchored_charge):
    reference = _first_attempt(db_session, anchored_charge).external_reference
    data = _response(f"{reference},PAID,108900.00,OP-1,,,,")

    first = import_response_batch(db_session, exported_batch.id, "resp.csv", data)
    second = import_response_batch(db_session, exported_batch.id, "resp.csv", data)

    assert second.already_imported is True
    assert second.duplicate_reason == "hash"
    assert second.inbound_batch_id == first.inbound_batch_id
    assert second.summary.paid == 1
    assert [run.status for run in _runs(db_session, exported_batch)] == [
        FileImportRunStatus.success,
        FileImportRunStatus.duplicate,
    ]


def test_same_totals_different_bytes_is_duplicate(db_session, exported_batch, anchored_charge):
    reference = _first_attempt(db_session, anchored_charge).external_reference
    import_response_batch(
        db_session, exported_batch.id, "resp.csv", _response(f"{reference},PAID,108900.00,OP-1,,,,")
    )

    again = import_response_batch(
        db_session,
        exported_batch.id,
        "resp-copy.csv",
        _response(f"{reference},PAID,108900.00,OP-1,,re-sent,,"),
    )

    assert again.already_imported is True
    assert again.duplicate_reason == "totals"


def test_different_content_after_reconcile_is_rejected(
    db_session, exported_batch, anchored_charge, collections_setting
):
    collections_setting("pd_inbound_dedupe_by_totals", False)
    reference = _first_attempt(db_session, anchored_charge).external_reference
    import_response_batch(
        db_session, exported_batch.id, "resp.csv", _response(f"{reference},PAID,108900.00,OP-1,,,,")
    )

    with pytest.raises(BatchAlreadyReconciled):
        import_response_batch(
            db_session,
            exported_batch.id,
            "resp-2.csv",
            _response(f"{reference},PAID,108900.00,OP-1,,second,,"),
        )


def test_rejected_row_moves_charge_past_due(db_session, exported_batch, anchored_charge):
    attempt = _first_attempt(db_session, anchored_charge)
    data = _response(f"{attempt.external_reference},REJECTED,108900.00,,51,FONDOS_INSUFICIENTES,,TR-9")

    result = import_response_batch(db_session, exported_batch.id, "resp.csv", data)

    assert result.summary.rejected == 1
    db_session.expire_all()
    assert attempt.status == AttemptStatus.rejected
    assert attempt.rejection_code == "51"
    assert attempt.rejection_reason == "FONDOS_INSUFICIENTES"
    assert anchored_charge.status == ChargeStatus.past_due
    assert anchored_charge.reconciliation_status == ReconciliationStatus.unmatched
    assert anchored_charge.dunning_stage == 1
    assert anchored_charge.overdue_since is not None
    # Later attempts stay scheduled for the next presentment.
    assert [a.status for a in anchored_charge.attempts[1:]] == [AttemptStatus.pending] * 2


def test_error_row_fails_attempt_only(db_session, exported_batch, anchored_charge):
    attempt = _first_attempt(db_session, anchored_charge)
    data = _response(f"{attempt.external_reference},ERROR,108900.00,,E1,Bank timeout,,")

    result = import_response_batch(db_session, exported_batch.id, "resp.csv", data)

    assert result.summary.error_rows == 1
    db_session.expire_all()
    assert attempt.status == AttemptStatus.failed
    assert anchored_charge.status == ChargeStatus.ready
    assert anchored_charge.reconciliation_status == ReconciliationStatus.error
    assert anchored_charge.dunning_stage == 0


def test_unknown_reference_and_bad_rows_are_recorded(db_session, exported_batch, anchored_charge):
    reference = _first_attempt(db_session, anchored_charge).external_reference
    data = _response(
        "AT-does-not-exist,PAID,10.00,OP-2,,,,",
        f"{reference},MAYBE,108900.00,,,,,",
    )

    result = import_response_batch(db_session, exported_batch.id, "resp.csv", data)

    assert result.summary.total_rows == 2
    assert result.summary.unmatched_rows == 1
    assert result.summary.error_rows == 2
    inbound = db_session.get(FileBatch, result.inbound_batch_id)
    assert [item.status for item in inbound.items] == [FileBatchItemStatus.error] * 2
    assert inbound.items[0].response_message == "Unknown external reference 'AT-does-not-exist'"
    assert inbound.items[1].response_message == "Unknown result 'MAYBE'"


def test_paid_row_for_charge_paid_elsewhere_is_late_duplicate(
    db_session, exported_batch, anchored_charge
):
    reference = _first_attempt(db_session, anchored_charge).external_reference
    close_charge_as_paid(db_session, anchored_charge.id, source_ref="CASH-1", channel="office")
    db_session.commit()

    result = import_response_batch(
        db_session, exported_batch.id, "resp.csv", _response(f"{reference},PAID,108900.00,OP-1,,,,")
    )

    assert result.summary.late_duplicates == 1
    db_session.expire_all()
    assert anchored_charge.paid_via_channel == "office"
    assert anchored_charge.paid_reference == "CASH-1"
    late = (
        db_session.query(BillingEvent)
        .filter(BillingEvent.event_type == EventType.late_duplicate_payment.value)
        .count()
    )
    assert late == 1


def test_file_for_another_layout_records_invalid_run(db_session, exported_batch):
    with pytest.raises(AdapterMismatch):
        import_response_batch(
            db_session, exported_batch.id, "resp.txt", b"reference;status\nAT-1;PAID\n"
        )

    (run,) = _runs(db_session, exported_batch)
    assert run.status == FileImportRunStatus.invalid
    assert run.metadata_["code"] == "adapter_mismatch"
    assert (
        db_session.query(FileBatch)
        .filter(FileBatch.direction == FileBatchDirection.inbound)
        .count()
        == 0
    )


def test_responses_need_an_exported_batch(db_session, anchored_charge, exported_batch):
    exported_batch.status = FileBatchStatus.ready
    db_session.commit()

    with pytest.raises(ConsistencyError):
        import_response_batch(db_session, exported_batch.id, "resp.csv", _response())

    with pytest.raises(BatchNotFound):
        import_response_batch(db_session, anchored_charge.id, "resp.csv", _response())


def test_fiscal_autorun_issues_documents_for_paid_charges(
    db_session, exported_batch, anchored_charge, collections_setting
):
    collections_setting("fiscal_autorun", True)
    reference = _first_attempt(db_session, anchored_charge).external_reference

    result = import_response_batch(
        db_session, exported_batch.id, "resp.csv", _response(f"{reference},PAID,108900.00,OP-1,,,,")
    )

    assert result.summary.fiscal_issued == 1
    document = (
        db_session.query(FiscalDocument)
        .filter(FiscalDocument.charge_id == anchored_charge.id)
        .one()
    )
    assert document.status == FiscalDocumentStatus.issued
    assert document.document_type == "INVOICE_B"
    assert len(document.issuer_reference) == 14


def test_galicia_response_round_trip(db_session, anchored_charge, batch_storage):
    outbound = _galicia_batch(db_session)
    assert outbound.original_file_name == "PD-20260310-0001.txt"
    reference = _first_attempt(db_session, anchored_charge).external_reference
    data = _galicia_response(
        f"D|1|{reference}|00|ACREDITADO|108900.00|20260311093000|TR-1|OP-9",
        total="108900.00",
    )

    result = import_response_batch(db_session, outbound.id, "PD-RESP-20260311.txt", data)

    assert result.already_imported is False
    assert result.summary.paid == 1
    db_session.expire_all()
    assert anchored_charge.status == ChargeStatus.paid
    assert anchored_charge.paid_reference == "OP-9"
    inbound = db_session.get(FileBatch, result.inbound_batch_id)
    assert inbound.adapter == "galicia_pd_v1"
    assert inbound.meta["header"]["business_date"] == "2026-03-11"
    assert inbound.meta["header"]["totals"] == {"record_count": 1, "amount_total": "108900.00"}
    assert inbound.items[0].row_payload["line"].startswith("D|1|")


def test_corrected_file_after_unmatched_import_is_applied(
    db_session, exported_batch, anchored_charge
):
    first = import_response_batch(
        db_session, exported_batch.id, "resp.csv", _response("AT-typo,PAID,108900.00,,,,,")
    )
    assert first.summary.matched_rows == 0

    reference = _first_attempt(db_session, anchored_charge).external_reference
    fixed = import_response_batch(
        db_session, exported_batch.id, "resp-fixed.csv", _response(f"{reference},PAID,108900.00,,,,,")
    )

    assert fixed.already_imported is False
    assert fixed.summary.paid == 1
    db_session.expire_all()
    assert anchored_charge.status == ChargeStatus.paid


def test_outbound_counters_ignore_rows_for_other_batches(
    db_session, exported_batch, anchored_charge
):
    reference = _first_attempt(db_session, anchored_charge).external_reference
    data = _response(f"{reference},PAID,108900.00,OP-1,,,,", "AT-foreign,PAID,5.00,,,,,")

    result = import_response_batch(db_session, exported_batch.id, "resp.csv", data)

    assert result.summary.paid == 1
    assert result.summary.unmatched_rows == 1
    db_session.expire_all()
    outbound = db_session.get(FileBatch, exported_batch.id)
    counted = outbound.total_paid_rows + outbound.total_rejected_rows + outbound.total_error_rows
    assert (outbound.total_paid_rows, outbound.total_rejected_rows, outbound.total_error_rows) == (
        1,
        0,
        0,
    )
    assert counted <= outbound.total_rows


def test_debug_csv_response_is_refused_for_galicia_batch(
    db_session, anchored_charge, batch_storage
):
    outbound = _galicia_batch(db_session)
    reference = _first_attempt(db_session, anchored_charge).external_reference

    with pytest.raises(AdapterMismatch):
        import_response_batch(
            db_session, outbound.id, "resp.csv", _response(f"{reference},PAID,108900.00,OP-1,,,,")
        )

    (run,) = _runs(db_session, outbound)
    assert run.status == FileImportRunStatus.invalid
    assert _inbound_count(db_session) == 0


def test_galicia_response_is_refused_for_debug_csv_batch(
    db_session, exported_batch, anchored_charge
):
    reference = _first_attempt(db_session, anchored_charge).external_reference
    data = _galicia_response(
        f"D|1|{reference}|00|ACREDITADO|108900.00|20260311093000|TR-1|OP-9",
        total="108900.00",
    )

    with pytest.raises(AdapterMismatch):
        import_response_batch(db_session, exported_batch.id, "PD-RESP-20260311.txt", data)

    (run,) = _runs(db_session, exported_batch)
    assert run.status == FileImportRunStatus.invalid
    assert _inbound_count(db_session) == 0
    db_session.expire_all()
    assert anchored_charge.status != ChargeStatus.paid


def test_upload_failure_leaves_no_inbound_batch(
    db_session, exported_batch, anchored_charge, monkeypatch
):
    def _fail(*args, **kwargs):
        raise ObjectStorageError("Failed to upload object")

    monkeypatch.setattr("app.services.collections.importer.upload_batch_file", _fail)
    status_before = anchored_charge.status
    reference = _first_attempt(db_session, anchored_charge).external_reference

    with pytest.raises(ObjectStorageError):
        import_response_batch(
            db_session, exported_batch.id, "resp.csv", _response(f"{reference},PAID,108900.00,OP-1,,,,")
        )

    (run,) = _runs(db_session, exported_batch)
    assert run.status == FileImportRunStatus.failed
    assert _inbound_count(db_session) == 0
    db_session.expire_all()
    assert anchored_charge.status == status_before
    assert db_session.get(FileBatch, exported_batch.id).status == FileBatchStatus.exported


def test_failed_import_removes_stored_response(
    db_session, exported_batch, anchored_charge, batch_storage, monkeypatch
):
    def _fail(*args, **kwargs):
        raise RuntimeError("fiscal backend down")

    monkeypatch.setattr(
        "app.services.collections.importer.FiscalIssuer.autorun_for_paid_charges", _fail
    )
    reference = _first_attempt(db_session, anchored_charge).external_reference

    with pytest.raises(RuntimeError):
        import_response_batch(
            db_session, exported_batch.id, "resp.csv", _response(f"{reference},PAID,108900.00,OP-1,,,,")
        )

    assert _inbound_count(db_session) == 0
    stored = [path for path in batch_storage.base_dir.rglob("*") if path.is_file()]
    assert stored
    assert all("/inbound/" not in path.as_posix() for path in stored)
