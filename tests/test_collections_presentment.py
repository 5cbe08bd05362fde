from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from app.models.billing import Attempt, AttemptStatus, MandateStatus
from app.models.collections import FileBatch, FileBatchDirection, FileBatchStatus
from app.schemas.collections import PreparePresentmentRequest
from app.services.collections import (
    download_batch_file,
    export_pending_prepared_batches,
    export_presentment_batch,
    list_batches,
    prepare_presentment_batch,
    presentment_batches,
)
from app.services.collections.errors import BatchNotFound, ConsistencyError
from app.services.object_storage import ObjectStorageError

ANCHOR = date(2026, 3, 10)


def _attempts(db_session, charge):
    return (
        db_session.query(Attempt)
        .filter(Attempt.charge_id == charge.id)
        .order_by(Attempt.attempt_no)
        .all()
    )


def test_prepare_groups_first_due_attempt(db_session, anchored_charge):
    result = prepare_presentment_batch(db_session, business_date=ANCHOR, actor_user_id="ops")

    assert result.no_op is False
    assert result.status == FileBatchStatus.ready
    assert result.record_count == 1
    assert result.amount_total == Decimal("108900.00")

    batch = db_session.get(FileBatch, result.batch_id)
    assert batch.direction == FileBatchDirection.outbound
    assert batch.sequence_no == 1
    assert batch.created_by == "ops"
    (item,) = batch.items
    assert item.line_no == 2
    assert item.charge_id == anchored_charge.id

    attempts = _attempts(db_session, anchored_charge)
    assert item.attempt_id == attempts[0].id
    assert [attempt.status for attempt in attempts] == [
        AttemptStatus.processing,
        AttemptStatus.pending,
        AttemptStatus.pending,
    ]


def test_prepare_twice_returns_existing_batch(db_session, anchored_charge):
    first = prepare_presentment_batch(db_session, business_date=ANCHOR)
    second = prepare_presentment_batch(db_session, business_date=ANCHOR)

    assert second.no_op is True
    assert second.reason == "batch_exists"
    assert second.batch_id == first.batch_id
    assert db_session.query(FileBatch).count() == 1


def test_dry_run_counts_without_writing(db_session, anchored_charge):
    result = prepare_presentment_batch(db_session, business_date=ANCHOR, dry_run=True)

    assert result.dry_run is True
    assert result.batch_id is None
    assert result.eligible_attempts == 1
    assert result.amount_total == Decimal("108900.00")
    assert db_session.query(FileBatch).count() == 0
    assert _attempts(db_session, anchored_charge)[0].status == AttemptStatus.pending


def test_prepare_without_due_attempts_is_no_op(db_session, anchored_charge):
    result = prepare_presentment_batch(db_session, business_date=date(2026, 3, 9))

    assert result.no_op is True
    assert result.reason == "no_eligible_attempts"


def test_weekend_date_defers_and_presents_one_attempt_per_charge(
    db_session, anchored_charge
):
    result = prepare_presentment_batch(db_session, business_date=date(2026, 3, 14))

    assert result.business_date == date(2026, 3, 16)
    assert result.record_count == 1
    attempts = _attempts(db_session, anchored_charge)
    assert attempts[0].status == AttemptStatus.processing
    assert attempts[2].status == AttemptStatus.pending


def test_inactive_mandate_is_not_presented_unless_allowed(
    db_session, anchored_charge, payment_method, collections_setting
):
    payment_method.mandate_status = MandateStatus.pending
    db_session.commit()

    assert prepare_presentment_batch(db_session, business_date=ANCHOR).no_op is True

    collections_setting("pd_require_active_mandate", False)
    assert prepare_presentment_batch(db_session, business_date=ANCHOR).record_count == 1


def test_disabled_tenant_is_skipped_unless_forced(
    db_session, anchored_charge, tenant_id, collections_setting
):
    collections_setting("pd_disabled_tenants", [str(tenant_id)])

    skipped = prepare_presentment_batch(db_session, business_date=ANCHOR)

    assert skipped.no_op is True
    assert skipped.tenants_considered == 1
    assert skipped.tenants_skipped_disabled == 1
    assert skipped.tenants_processed == 0
    assert db_session.query(FileBatch).count() == 0

    forced = prepare_presentment_batch(db_session, business_date=ANCHOR, force=True)

    assert forced.record_count == 1
    assert forced.tenants_skipped_disabled == 0
    assert forced.tenants_processed == 1
    assert db_session.get(FileBatch, forced.batch_id).meta["force"] is True


def test_same_day_cutoff_hour_defers_attempts(
    db_session, anchored_charge, collections_setting, monkeypatch
):
    collections_setting("pd_cutoff_hour", 15)
    # 17:00 in Buenos Aires on the business date.
    monkeypatch.setattr(
        "app.services.collections.presentment.utcnow",
        lambda: datetime(2026, 3, 10, 20, 0, tzinfo=UTC),
    )

    deferred = prepare_presentment_batch(db_session, business_date=ANCHOR)

    assert deferred.no_op is True
    assert deferred.deferred_by_cutoff == 1
    assert _attempts(db_session, anchored_charge)[0].status == AttemptStatus.pending

    forced = prepare_presentment_batch(db_session, business_date=ANCHOR, force=True)

    assert forced.record_count == 1
    assert forced.deferred_by_cutoff == 0


def test_cutoff_hour_only_applies_on_the_business_date(
    db_session, anchored_charge, collections_setting, monkeypatch
):
    collections_setting("pd_cutoff_hour", 15)
    monkeypatch.setattr(
        "app.services.collections.presentment.utcnow",
        lambda: datetime(2026, 3, 9, 22, 0, tzinfo=UTC),
    )

    result = prepare_presentment_batch(db_session, business_date=ANCHOR)

    assert result.record_count == 1
    assert result.deferred_by_cutoff == 0


def test_explicit_cutoff_limits_scheduled_attempts(db_session, anchored_charge):
    # Attempts for the anchor are scheduled at local midnight (03:00 UTC).
    early = datetime(2026, 3, 10, 2, 0, tzinfo=UTC)

    result = prepare_presentment_batch(db_session, business_date=ANCHOR, cutoff=early)

    assert result.no_op is True
    assert result.reason == "no_eligible_attempts"

    result = prepare_presentment_batch(
        db_session, business_date=ANCHOR, cutoff=datetime(2026, 3, 10, 4, 0, tzinfo=UTC)
    )

    assert result.record_count == 1
    batch = db_session.get(FileBatch, result.batch_id)
    assert batch.meta["cutoff"].startswith("2026-03-10T04:00:00")


def test_export_writes_file_and_is_idempotent(db_session, anchored_charge, batch_storage):
    prepared = prepare_presentment_batch(db_session, business_date=ANCHOR)

    exported = export_presentment_batch(db_session, prepared.batch_id)

    assert exported.already_exported is False
    assert exported.status == FileBatchStatus.exported
    assert exported.file_name == "debug_csv-20260310-0001.csv"
    assert exported.storage_key.startswith("billing/direct-debit/outbound/2026-03-10/")
    content = batch_storage.download(exported.storage_key).decode("utf-8")
    reference = _attempts(db_session, anchored_charge)[0].external_reference
    assert f"{reference}," in content
    assert "108900.00" in content

    again = export_presentment_batch(db_session, prepared.batch_id)
    assert again.already_exported is True
    assert again.sha256 == exported.sha256


def test_export_rejects_batches_that_are_not_ready(db_session, anchored_charge, batch_storage):
    prepared = prepare_presentment_batch(db_session, business_date=ANCHOR)
    batch = db_session.get(FileBatch, prepared.batch_id)
    batch.status = FileBatchStatus.failed
    db_session.commit()

    with pytest.raises(ConsistencyError):
        export_presentment_batch(db_session, prepared.batch_id)

    with pytest.raises(BatchNotFound):
        export_presentment_batch(db_session, anchored_charge.id)


def test_failed_upload_marks_batch_failed_and_releases_attempts(
    db_session, anchored_charge, monkeypatch
):
    prepared = prepare_presentment_batch(db_session, business_date=ANCHOR)

    def _boom(*args, **kwargs):
        raise ObjectStorageError("Failed to upload object")

    monkeypatch.setattr("app.services.collections.presentment.upload_batch_file", _boom)

    with pytest.raises(ObjectStorageError):
        export_presentment_batch(db_session, prepared.batch_id)

    batch = db_session.get(FileBatch, prepared.batch_id)
    assert batch.status == FileBatchStatus.failed
    assert batch.error_message == "Failed to upload object"
    db_session.expire_all()
    assert _attempts(db_session, anchored_charge)[0].status == AttemptStatus.pending

    retry = prepare_presentment_batch(db_session, business_date=ANCHOR)
    assert retry.no_op is False
    assert retry.batch_id != prepared.batch_id


def test_export_pending_and_download(db_session, anchored_charge, batch_storage):
    assert export_pending_prepared_batches(db_session).no_op is True
    prepared = prepare_presentment_batch(db_session, business_date=ANCHOR)

    result = export_pending_prepared_batches(db_session, actor_user_id="scheduler")

    assert result.batches_considered == 1
    assert result.batches_exported == 1
    assert result.batch_ids == [prepared.batch_id]

    batch, data = download_batch_file(db_session, prepared.batch_id)
    assert batch.status == FileBatchStatus.exported
    assert data.startswith(b"external_reference,attempt_id,charge_id,amount")

    listed = list_batches(db_session, date_from=ANCHOR, date_to=ANCHOR)
    assert [item.id for item in listed] == [prepared.batch_id]
    assert list_batches(db_session, direction=FileBatchDirection.inbound) == []


def test_create_prepares_and_exports(db_session, anchored_charge, batch_storage):
    created = presentment_batches.create(
        db_session, PreparePresentmentRequest(business_date=ANCHOR)
    )

    assert created.prepare.record_count == 1
    assert created.export.status == FileBatchStatus.exported


def test_download_requires_stored_file(db_session, anchored_charge):
    prepared = prepare_presentment_batch(db_session, business_date=ANCHOR)

    with pytest.raises(BatchNotFound):
        download_batch_file(db_session, prepared.batch_id)
