"""Outbound presentment batches: prepare, export, list and download."""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime

from sqlalchemy.orm import Session

from app.models.billing import (
    Attempt,
    AttemptStatus,
    BillingPaymentMethod,
    Charge,
    ChargeStatus,
    MandateStatus,
)
from app.models.collections import (
    OFFICE_BANKING_CHANNEL,
    FileBatch,
    FileBatchDirection,
    FileBatchItem,
    FileBatchItemStatus,
    FileBatchStatus,
)
from app.schemas.collections import (
    CreatePresentmentResult,
    ExportPendingError,
    ExportPendingRequest,
    ExportPendingResult,
    ExportPresentmentResult,
    PreparePresentmentRequest,
    PreparePresentmentResult,
)
from app.services.collections import dates
from app.services.collections.adapters import (
    BankFileAdapter,
    ControlTotals,
    OutboundContext,
    OutboundRow,
    external_reference_for,
    normalize_adapter_name,
    resolve_adapter,
)
from app.services.collections.business_calendar import resolve_operational_date
from app.services.collections.config import CollectionsConfig, load_collections_config
from app.services.collections.errors import BatchNotFound, CollectionsError, ConsistencyError
from app.services.collections.storage import (
    build_storage_key,
    read_batch_file,
    sha256_of_buffer,
    upload_batch_file,
)
from app.services.common import as_utc, coerce_uuid, get_by_id, round_money, utcnow
from app.services.events import emit_event
from app.services.events.types import EventType
from app.services.numbering import next_batch_number
from app.services.object_storage import ObjectStorageError

logger = logging.getLogger(__name__)

# Outbound batches in these states block a second prepare for the same day.
ACTIVE_OUTBOUND_STATUSES = (
    FileBatchStatus.created,
    FileBatchStatus.ready,
    FileBatchStatus.exported,
    FileBatchStatus.reconciled,
)
PRESENTABLE_ATTEMPT_STATUSES = (AttemptStatus.pending, AttemptStatus.scheduled)


def adapter_for(config: CollectionsConfig, name: str | None = None) -> BankFileAdapter:
    return resolve_adapter(name or config.pd_adapter, **config.adapter_options())


def _get_outbound_batch(db: Session, batch_id) -> FileBatch:
    batch = get_by_id(db, FileBatch, batch_id)
    if not batch or batch.direction != FileBatchDirection.outbound:
        raise BatchNotFound("Outbound batch not found", batch_id=str(batch_id))
    return batch


def _outbound_row(attempt: Attempt, charge: Charge, method: BillingPaymentMethod | None,
                  fallback_due: date) -> OutboundRow:
    return OutboundRow(
        attempt_id=attempt.id,
        charge_id=charge.id,
        external_reference=attempt.external_reference or external_reference_for(attempt.id),
        amount=round_money(charge.amount_ars_due),
        due_date=charge.due_date or fallback_due,
        holder_name=method.holder_name if method else None,
        holder_tax_id=method.holder_tax_id if method else None,
        account_last4=method.mandate_account_last4 if method else None,
    )


@dataclass
class PresentmentSelection:
    entries: list[tuple[Attempt, Charge, BillingPaymentMethod]] = field(default_factory=list)
    deferred_by_cutoff: int = 0
    tenants_considered: int = 0
    tenants_processed: int = 0
    tenants_skipped_disabled: int = 0


class PresentmentBatchBuilder:
    @staticmethod
    def eligible_attempts(
        db: Session,
        config: CollectionsConfig,
        business_date: date,
        cutoff: datetime | None = None,
        now: datetime | None = None,
        force: bool = False,
    ) -> PresentmentSelection:
        """Attempts due by ``cutoff`` (end of ``business_date`` by default), one per charge.

        Charges that already have an attempt out in another batch are skipped,
        and only the lowest attempt number of a charge is presented. Unless
        ``force`` is set, tenants with direct debit disabled are skipped and,
        once the local cutoff hour has passed on ``business_date`` itself, the
        attempts are deferred to a later batch.
        """
        cutoff = as_utc(cutoff) or dates.end_of_local_day(business_date, config.timezone)
        now = now or utcnow()
        past_cutoff_hour = (
            not force
            and config.pd_cutoff_hour is not None
            and dates.local_today(config.timezone, now) == business_date
            and dates.local_hour(config.timezone, now) >= config.pd_cutoff_hour
        )
        query = (
            db.query(Attempt, Charge, BillingPaymentMethod)
            .join(Charge, Attempt.charge_id == Charge.id)
            .join(BillingPaymentMethod, Attempt.payment_method_id == BillingPaymentMethod.id)
            .filter(Attempt.status.in_(PRESENTABLE_ATTEMPT_STATUSES))
            .filter(Attempt.channel == OFFICE_BANKING_CHANNEL)
            .filter(Attempt.scheduled_for <= cutoff)
            .filter(Charge.status.notin_([ChargeStatus.paid, ChargeStatus.canceled]))
        )
        if config.pd_require_active_mandate:
            query = query.filter(BillingPaymentMethod.mandate_status == MandateStatus.active)
        rows = query.order_by(
            Attempt.scheduled_for.asc(), Attempt.attempt_no.asc(), Attempt.id.asc()
        ).all()
        selection = PresentmentSelection()
        considered = set()
        skipped_disabled = set()
        candidates = []
        for attempt, charge, method in rows:
            considered.add(charge.tenant_id)
            if not force and charge.tenant_id in config.pd_disabled_tenants:
                skipped_disabled.add(charge.tenant_id)
                continue
            if past_cutoff_hour:
                selection.deferred_by_cutoff += 1
                continue
            candidates.append((attempt, charge, method))
        selection.tenants_considered = len(considered)
        selection.tenants_skipped_disabled = len(skipped_disabled)
        if not candidates:
            return selection

        charge_ids = {charge.id for _, charge, _ in candidates}
        busy = {
            row[0]
            for row in db.query(Attempt.charge_id)
            .filter(Attempt.charge_id.in_(charge_ids))
            .filter(Attempt.status == AttemptStatus.processing)
            .all()
        }
        selected = {}
        for attempt, charge, method in candidates:
            if charge.id in busy:
                continue
            current = selected.get(charge.id)
            if current is None or attempt.attempt_no < current[0].attempt_no:
                selected[charge.id] = (attempt, charge, method)
        selection.entries = sorted(
            selected.values(),
            key=lambda entry: (
                as_utc(entry[0].scheduled_for), entry[1].tenant_charge_no or 0, str(entry[0].id)
            ),
        )
        selection.tenants_processed = len({charge.tenant_id for _, charge, _ in selection.entries})
        return selection

    @staticmethod
    def prepare(db: Session, payload: PreparePresentmentRequest) -> PreparePresentmentResult:
        config = load_collections_config(db)
        requested = payload.business_date or dates.local_today(config.timezone)
        business_date = resolve_operational_date(requested, config.holidays).business_date
        adapter = adapter_for(config, payload.adapter)
        adapter_name = normalize_adapter_name(adapter.name)

        existing = (
            db.query(FileBatch)
            .filter(FileBatch.direction == FileBatchDirection.outbound)
            .filter(FileBatch.business_date == business_date)
            .filter(FileBatch.adapter == adapter_name)
            .filter(FileBatch.status.in_(ACTIVE_OUTBOUND_STATUSES))
            .order_by(FileBatch.created_at.asc())
            .first()
        )
        if existing:
            return PreparePresentmentResult(
                no_op=True,
                dry_run=payload.dry_run,
                batch_id=existing.id,
                business_date=business_date,
                adapter=adapter_name,
                record_count=existing.record_count,
                amount_total=existing.amount_total,
                status=existing.status,
                reason="batch_exists",
            )

        cutoff = as_utc(payload.cutoff) or dates.end_of_local_day(business_date, config.timezone)
        selection = PresentmentBatchBuilder.eligible_attempts(
            db, config, business_date, cutoff=cutoff, force=payload.force
        )
        eligible = selection.entries
        rows = [
            _outbound_row(attempt, charge, method, business_date)
            for attempt, charge, method in eligible
        ]
        totals = ControlTotals.from_amounts(row.amount for row in rows)
        selection_counters = {
            "deferred_by_cutoff": selection.deferred_by_cutoff,
            "tenants_considered": selection.tenants_considered,
            "tenants_processed": selection.tenants_processed,
            "tenants_skipped_disabled": selection.tenants_skipped_disabled,
        }

        if payload.dry_run or not rows:
            return PreparePresentmentResult(
                no_op=not rows,
                dry_run=payload.dry_run,
                business_date=business_date,
                adapter=adapter_name,
                eligible_attempts=len(rows),
                record_count=totals.record_count,
                amount_total=totals.amount_total,
                reason=None if rows else "no_eligible_attempts",
                **selection_counters,
            )

        nested = db.begin_nested()
        try:
            batch = FileBatch(
                sequence_no=next_batch_number(db),
                direction=FileBatchDirection.outbound,
                channel=OFFICE_BANKING_CHANNEL,
                adapter=adapter_name,
                adapter_version=adapter.version,
                business_date=business_date,
                status=FileBatchStatus.created,
                record_count=totals.record_count,
                amount_total=totals.amount_total,
                total_rows=totals.record_count,
                created_by=payload.actor_user_id,
                meta={
                    "requested_date": requested.isoformat(),
                    "cutoff": cutoff.isoformat(),
                    "force": payload.force,
                },
            )
            db.add(batch)
            db.flush()
            for line_no, ((attempt, _charge, _method), row) in enumerate(
                zip(eligible, rows), start=2
            ):
                attempt.external_reference = row.external_reference
                attempt.status = AttemptStatus.processing
                db.add(
                    FileBatchItem(
                        batch_id=batch.id,
                        attempt_id=row.attempt_id,
                        charge_id=row.charge_id,
                        line_no=line_no,
                        external_reference=row.external_reference,
                        row_hash=row.row_hash,
                        amount_ars=row.amount,
                        status=FileBatchItemStatus.pending,
                    )
                )
            batch.status = FileBatchStatus.ready
            db.flush()
            emit_event(
                db,
                EventType.presentment_batch_prepared,
                {
                    "business_date": business_date.isoformat(),
                    "adapter": adapter_name,
                    "record_count": totals.record_count,
                    "amount_total": str(totals.amount_total),
                },
                actor=payload.actor_user_id,
                tenant_id=payload.actor_tenant_id,
                batch_id=batch.id,
            )
            nested.commit()
        except Exception:
            nested.rollback()
            raise
        db.commit()
        logger.info(
            f"Prepared presentment batch {batch.id} for {business_date.isoformat()} "
            f"({adapter_name}): {totals.record_count} rows, {totals.amount_total}"
        )
        return PreparePresentmentResult(
            no_op=False,
            batch_id=batch.id,
            business_date=business_date,
            adapter=adapter_name,
            eligible_attempts=len(rows),
            record_count=totals.record_count,
            amount_total=totals.amount_total,
            status=batch.status,
            **selection_counters,
        )

    @staticmethod
    def _rows_for_batch(db: Session, batch: FileBatch) -> list[OutboundRow]:
        rows = []
        for item in batch.items:
            attempt = item.attempt
            charge = item.charge
            method = attempt.payment_method if attempt else None
            rows.append(
                OutboundRow(
                    attempt_id=item.attempt_id,
                    charge_id=item.charge_id,
                    external_reference=item.external_reference,
                    amount=round_money(item.amount_ars),
                    due_date=(charge.due_date if charge else None) or batch.business_date,
                    holder_name=method.holder_name if method else None,
                    holder_tax_id=method.holder_tax_id if method else None,
                    account_last4=method.mandate_account_last4 if method else None,
                )
            )
        return rows

    @staticmethod
    def _mark_export_failed(db: Session, batch: FileBatch, message: str) -> None:
        batch.status = FileBatchStatus.failed
        batch.error_message = message
        attempt_ids = [item.attempt_id for item in batch.items if item.attempt_id]
        if attempt_ids:
            (
                db.query(Attempt)
                .filter(Attempt.id.in_(attempt_ids))
                .filter(Attempt.status == AttemptStatus.processing)
                .update({Attempt.status: AttemptStatus.pending}, synchronize_session=False)
            )
        db.commit()

    @staticmethod
    def export(db: Session, batch_id, actor_user_id: str | None = None) -> ExportPresentmentResult:
        batch = _get_outbound_batch(db, batch_id)
        if batch.status in (FileBatchStatus.exported, FileBatchStatus.reconciled) and batch.storage_key:
            return ExportPresentmentResult(
                batch_id=batch.id,
                already_exported=True,
                status=batch.status,
                storage_key=batch.storage_key,
                file_name=batch.original_file_name,
                sha256=batch.sha256,
                record_count=batch.record_count,
                amount_total=batch.amount_total,
            )
        if batch.status != FileBatchStatus.ready:
            raise ConsistencyError(
                f"Batch is {batch.status.value}; only ready batches can be exported",
                batch_id=str(batch.id),
                status=batch.status.value,
            )

        config = load_collections_config(db)
        rows = PresentmentBatchBuilder._rows_for_batch(db, batch)
        try:
            adapter = adapter_for(config, batch.adapter)
            outbound = adapter.build_outbound_file(
                OutboundContext(
                    batch_id=batch.id,
                    sequence_no=batch.sequence_no or 0,
                    business_date=batch.business_date,
                    options=config.adapter_options(),
                ),
                rows,
            )
            adapter.validate_outbound_control_totals(outbound, rows)
            storage_key = build_storage_key(
                FileBatchDirection.outbound.value, batch.business_date, batch.id, outbound.file_name
            )
            upload_batch_file(storage_key, outbound.content, outbound.content_type)
        except (CollectionsError, ObjectStorageError) as exc:
            message = getattr(exc, "message", None) or str(exc)
            logger.warning(f"Export failed for batch {batch.id}: {message}")
            PresentmentBatchBuilder._mark_export_failed(db, batch, message)
            raise

        digest = sha256_of_buffer(outbound.content)
        batch.storage_key = storage_key
        batch.original_file_name = outbound.file_name
        batch.sha256 = digest
        batch.file_hash = digest
        batch.status = FileBatchStatus.exported
        batch.exported_at = utcnow()
        batch.error_message = None
        emit_event(
            db,
            EventType.presentment_batch_exported,
            {
                "storage_key": storage_key,
                "file_name": outbound.file_name,
                "sha256": digest,
                "record_count": outbound.totals.record_count,
                "amount_total": str(outbound.totals.amount_total),
            },
            actor=actor_user_id,
            batch_id=batch.id,
        )
        db.commit()
        db.refresh(batch)
        logger.info(f"Exported presentment batch {batch.id} to {storage_key}")
        return ExportPresentmentResult(
            batch_id=batch.id,
            already_exported=False,
            status=batch.status,
            storage_key=batch.storage_key,
            file_name=batch.original_file_name,
            sha256=batch.sha256,
            record_count=batch.record_count,
            amount_total=batch.amount_total,
        )

    @staticmethod
    def export_pending(db: Session, payload: ExportPendingRequest) -> ExportPendingResult:
        query = (
            db.query(FileBatch)
            .filter(FileBatch.direction == FileBatchDirection.outbound)
            .filter(FileBatch.status == FileBatchStatus.ready)
        )
        if payload.adapter:
            query = query.filter(FileBatch.adapter == normalize_adapter_name(payload.adapter))
        batches = query.order_by(
            FileBatch.business_date.asc(), FileBatch.sequence_no.asc()
        ).all()
        result = ExportPendingResult(no_op=not batches, batches_considered=len(batches))
        for batch in batches:
            batch_id = batch.id
            try:
                exported = PresentmentBatchBuilder.export(db, batch_id, payload.actor_user_id)
            except (CollectionsError, ObjectStorageError) as exc:
                result.errors.append(
                    ExportPendingError(
                        batch_id=batch_id, message=getattr(exc, "message", None) or str(exc)
                    )
                )
                continue
            if exported.already_exported:
                result.already_exported += 1
            else:
                result.batches_exported += 1
                result.batch_ids.append(batch_id)
        if batches:
            logger.info(
                f"Exported {result.batches_exported}/{len(batches)} pending batches "
                f"({len(result.errors)} failed)"
            )
        return result

    @staticmethod
    def create(db: Session, payload: PreparePresentmentRequest) -> CreatePresentmentResult:
        prepared = PresentmentBatchBuilder.prepare(db, payload)
        if payload.dry_run or not prepared.batch_id:
            return CreatePresentmentResult(prepare=prepared)
        exported = PresentmentBatchBuilder.export(db, prepared.batch_id, payload.actor_user_id)
        return CreatePresentmentResult(prepare=prepared, export=exported)

    @staticmethod
    def list_batches(
        db: Session,
        date_from: date | None = None,
        date_to: date | None = None,
        direction: FileBatchDirection | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[FileBatch]:
        query = db.query(FileBatch)
        if date_from:
            query = query.filter(FileBatch.business_date >= date_from)
        if date_to:
            query = query.filter(FileBatch.business_date <= date_to)
        if direction:
            query = query.filter(FileBatch.direction == direction)
        return (
            query.order_by(FileBatch.business_date.desc(), FileBatch.created_at.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )

    @staticmethod
    def download(db: Session, batch_id) -> tuple[FileBatch, bytes]:
        batch = get_by_id(db, FileBatch, batch_id)
        if not batch:
            raise BatchNotFound("Batch not found", batch_id=str(batch_id))
        if not batch.storage_key:
            raise BatchNotFound("Batch has no stored file", batch_id=str(batch.id))
        return batch, read_batch_file(batch.storage_key)


presentment_batches = PresentmentBatchBuilder()


def prepare_presentment_batch(
    db: Session,
    business_date: date | None = None,
    actor_user_id: str | None = None,
    adapter: str | None = None,
    dry_run: bool = False,
    actor_tenant_id=None,
    force: bool = False,
    cutoff: datetime | None = None,
) -> PreparePresentmentResult:
    return PresentmentBatchBuilder.prepare(
        db,
        PreparePresentmentRequest(
            business_date=business_date,
            actor_user_id=actor_user_id,
            actor_tenant_id=coerce_uuid(actor_tenant_id),
            adapter=adapter,
            dry_run=dry_run,
            force=force,
            cutoff=cutoff,
        ),
    )


def export_presentment_batch(
    db: Session, batch_id, actor_user_id: str | None = None
) -> ExportPresentmentResult:
    return PresentmentBatchBuilder.export(db, batch_id, actor_user_id)


def export_pending_prepared_batches(
    db: Session, actor_user_id: str | None = None, adapter: str | None = None
) -> ExportPendingResult:
    return PresentmentBatchBuilder.export_pending(
        db, ExportPendingRequest(actor_user_id=actor_user_id, adapter=adapter)
    )


def create_presentment_batch(
    db: Session,
    business_date: date | None = None,
    actor_user_id: str | None = None,
    adapter: str | None = None,
) -> CreatePresentmentResult:
    return PresentmentBatchBuilder.create(
        db,
        PreparePresentmentRequest(
            business_date=business_date, actor_user_id=actor_user_id, adapter=adapter
        ),
    )


def list_batches(db: Session, date_from: date | None = None, date_to: date | None = None,
                 direction: FileBatchDirection | None = None) -> list[FileBatch]:
    return PresentmentBatchBuilder.list_batches(db, date_from, date_to, direction)


def download_batch_file(db: Session, batch_id) -> tuple[FileBatch, bytes]:
    return PresentmentBatchBuilder.download(db, batch_id)
