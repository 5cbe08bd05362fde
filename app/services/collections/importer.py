"""Inbound bank response files.

An import is idempotent per outbound batch: the same content (by hash, or by
adapter + record count + amount total + row outcomes when enabled) is reported
as ``already_imported`` with the counters of the first import. The file is only
stored once the inbound batch is claimed, and removed again if the import rolls
back. Structural errors abort the call without persisting an inbound batch;
row-level problems are recorded as ERROR items and the import continues.
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.metrics import COLLECTIONS_IMPORT_ROWS
from app.models.billing import (
    OPEN_ATTEMPT_STATUSES,
    AttemptStatus,
    ChargeStatus,
)
from app.models.collections import (
    FileBatch,
    FileBatchDirection,
    FileBatchItem,
    FileBatchItemStatus,
    FileBatchStatus,
    FileImportRun,
    FileImportRunStatus,
)
from app.schemas.collections import ImportResponseResult, ImportSummary
from app.services.collections.adapters import (
    BankFileAdapter,
    InboundRow,
    ParsedInboundFile,
    ResultStatus,
)
from app.services.collections.config import CollectionsConfig, load_collections_config
from app.services.collections.dunning import DunningHook
from app.services.collections.errors import (
    AdapterMismatch,
    BatchAlreadyReconciled,
    BatchNotFound,
    ConsistencyError,
)
from app.services.collections.fiscal import FiscalIssuer
from app.services.collections.presentment import adapter_for
from app.services.collections.reconciliation import ReconciliationEngine
from app.services.collections.storage import (
    build_storage_key,
    delete_batch_file,
    sha256_of_buffer,
    upload_batch_file,
)
from app.services.common import get_by_id, round_money, to_json_safe, utcnow
from app.services.events import emit_event
from app.services.events.types import EventType
from app.services.object_storage import ObjectStorageError

logger = logging.getLogger(__name__)

IMPORTABLE_OUTBOUND_STATUSES = (FileBatchStatus.exported, FileBatchStatus.reconciled)


def _summary_from_batch(batch: FileBatch) -> ImportSummary:
    meta = batch.meta or {}
    return ImportSummary(
        total_rows=batch.total_rows or 0,
        matched_rows=meta.get("matched_rows", 0),
        paid=batch.total_paid_rows or 0,
        rejected=batch.total_rejected_rows or 0,
        error_rows=batch.total_error_rows or 0,
        unmatched_rows=meta.get("unmatched_rows", 0),
        late_duplicates=meta.get("late_duplicates", 0),
        fiscal_issued=meta.get("fiscal_issued", 0),
        fiscal_failed=meta.get("fiscal_failed", 0),
    )


def rows_signature(parsed: ParsedInboundFile) -> str:
    """Digest of the row outcomes, independent of row order and file framing."""
    lines = sorted(
        "|".join(
            [
                row.external_reference or "",
                row.status.value,
                row.result_code or "",
                f"{round_money(row.amount):.2f}" if row.amount is not None else "",
                row.paid_reference or "",
            ]
        )
        for row in parsed.rows
    )
    return sha256_of_buffer("\n".join(lines).encode("utf-8"))


def _detected_totals(parsed: ParsedInboundFile) -> dict:
    computed = parsed.computed
    detected = {
        "record_count": computed.record_count,
        "amount_total": str(computed.amount_total),
    }
    if parsed.declared:
        detected["declared_record_count"] = parsed.declared.record_count
        detected["declared_amount_total"] = str(parsed.declared.amount_total)
    return detected


class ResponseBatchImporter:
    @staticmethod
    def _record_run(
        db: Session,
        status: FileImportRunStatus,
        outbound: FileBatch,
        file_name: str | None,
        file_hash: str,
        adapter: BankFileAdapter | None,
        actor_user_id: str | None,
        inbound: FileBatch | None = None,
        parsed: ParsedInboundFile | None = None,
        error_message: str | None = None,
        metadata: dict | None = None,
    ) -> FileImportRun:
        run = FileImportRun(
            outbound_batch_id=outbound.id,
            inbound_batch_id=inbound.id if inbound else None,
            file_name=file_name,
            file_hash=file_hash,
            adapter=adapter.name if adapter else None,
            uploaded_by=actor_user_id,
            status=status,
            parsed_rows=len(parsed.rows) if parsed else 0,
            detected_totals=_detected_totals(parsed) if parsed else None,
            error_message=error_message,
            metadata_=metadata,
        )
        db.add(run)
        db.flush()
        return run

    @staticmethod
    def _find_duplicate(
        db: Session,
        outbound: FileBatch,
        file_hash: str,
        adapter: BankFileAdapter | None = None,
        parsed: ParsedInboundFile | None = None,
    ) -> tuple[FileBatch | None, str | None]:
        query = (
            db.query(FileBatch)
            .filter(FileBatch.parent_batch_id == outbound.id)
            .filter(FileBatch.direction == FileBatchDirection.inbound)
        )
        by_hash = query.filter(FileBatch.file_hash == file_hash).first()
        if by_hash:
            return by_hash, "hash"
        if adapter is None or parsed is None:
            return None, None
        # Same totals only count when every row carries the same outcome.
        computed = parsed.computed
        signature = rows_signature(parsed)
        candidates = (
            query.filter(FileBatch.adapter == adapter.name)
            .filter(FileBatch.record_count == computed.record_count)
            .filter(FileBatch.amount_total == computed.amount_total)
            .order_by(FileBatch.created_at.asc())
            .all()
        )
        for candidate in candidates:
            if (candidate.meta or {}).get("rows_signature") == signature:
                return candidate, "totals"
        return None, None

    @staticmethod
    def _duplicate_result(
        db: Session,
        outbound: FileBatch,
        existing: FileBatch,
        reason: str,
        file_name: str | None,
        file_hash: str,
        adapter: BankFileAdapter | None,
        actor_user_id: str | None,
        parsed: ParsedInboundFile | None = None,
    ) -> ImportResponseResult:
        run = ResponseBatchImporter._record_run(
            db,
            FileImportRunStatus.duplicate,
            outbound,
            file_name,
            file_hash,
            adapter,
            actor_user_id,
            inbound=existing,
            parsed=parsed,
            metadata={"duplicate_reason": reason},
        )
        db.commit()
        logger.info(
            f"Response file {file_name!r} for batch {outbound.id} already imported "
            f"as {existing.id} (matched by {reason})"
        )
        return ImportResponseResult(
            already_imported=True,
            outbound_batch_id=outbound.id,
            inbound_batch_id=existing.id,
            import_run_id=run.id,
            duplicate_reason=reason,
            summary=_summary_from_batch(existing),
        )

    @staticmethod
    def _discard_upload(storage_key: str) -> None:
        try:
            delete_batch_file(storage_key)
        except ObjectStorageError as exc:
            logger.warning(f"Could not remove orphaned response file {storage_key}: {exc}")

    @staticmethod
    def _parse(adapter: BankFileAdapter, file_name: str | None, data: bytes) -> ParsedInboundFile:
        if not adapter.matches(file_name, data):
            raise adapter.mismatch(
                f"File does not match the {adapter.signature()} layout",
                file_name=file_name,
            )
        parsed = adapter.parse_inbound_file(data)
        if parsed.adapter != adapter.name:
            raise adapter.mismatch(
                f"Parsed adapter {parsed.adapter} differs from {adapter.name}",
                file_name=file_name,
            )
        adapter.validate_inbound_control_totals(parsed)
        return parsed

    @staticmethod
    def _apply_row(
        db: Session,
        adapter: BankFileAdapter,
        row: InboundRow,
        outbound_item: FileBatchItem | None,
        summary: ImportSummary,
        processed_at: datetime,
        actor_user_id: str | None,
        paid_charge_ids: list,
    ) -> FileBatchItemStatus:
        attempt = outbound_item.attempt if outbound_item else None
        if attempt is None:
            summary.unmatched_rows += 1
            summary.error_rows += 1
            if not row.error:
                row.error = f"Unknown external reference {row.external_reference!r}"
            return FileBatchItemStatus.error

        summary.matched_rows += 1
        charge = attempt.charge

        if row.status == ResultStatus.error:
            summary.error_rows += 1
            if attempt.status in OPEN_ATTEMPT_STATUSES:
                ReconciliationEngine.mark_attempt_failed(attempt, charge, row, processed_at)
            return FileBatchItemStatus.error

        if row.status == ResultStatus.rejected:
            summary.rejected += 1
            if attempt.status not in OPEN_ATTEMPT_STATUSES:
                return FileBatchItemStatus.rejected
            reason = adapter.rejection_reason(row.result_code) or row.message
            ReconciliationEngine.mark_attempt_rejected(attempt, charge, row, reason, processed_at)
            db.flush()
            rejection = DunningHook.on_attempt_rejected(
                db, charge.id, attempt.id, reason_code=row.result_code, reason_text=reason
            )
            emit_event(
                db,
                EventType.charge_rejected,
                {
                    "attempt_id": str(attempt.id),
                    "attempt_no": attempt.attempt_no,
                    "result_code": row.result_code,
                    "reason": reason,
                    "dunning_stage": rejection.stage,
                    "final_rejection": rejection.final_rejection,
                },
                actor=actor_user_id,
                tenant_id=charge.tenant_id,
                subscription_id=charge.subscription_id,
                charge_id=charge.id,
                batch_id=outbound_item.batch_id,
            )
            return FileBatchItemStatus.rejected

        summary.paid += 1
        if charge.status == ChargeStatus.paid:
            same_payment = (
                attempt.status == AttemptStatus.paid
                and charge.paid_reference == row.paid_reference
            )
            if not same_payment:
                summary.late_duplicates += 1
                emit_event(
                    db,
                    EventType.late_duplicate_payment,
                    {
                        "attempt_id": str(attempt.id),
                        "external_reference": row.external_reference,
                        "paid_reference": row.paid_reference,
                        "amount": row.amount,
                        "charge_paid_via": charge.paid_via_channel,
                        "charge_paid_reference": charge.paid_reference,
                    },
                    actor=actor_user_id,
                    tenant_id=charge.tenant_id,
                    subscription_id=charge.subscription_id,
                    charge_id=charge.id,
                    batch_id=outbound_item.batch_id,
                )
                logger.warning(
                    f"Late duplicate payment for charge {charge.id} "
                    f"(reference {row.paid_reference})"
                )
            return FileBatchItemStatus.paid

        ReconciliationEngine.mark_attempt_paid(attempt, row, processed_at)
        db.flush()
        DunningHook.on_attempt_paid(
            db,
            charge.id,
            amount=row.amount,
            paid_at=row.settled_at or processed_at,
            source_ref=row.paid_reference,
            actor=actor_user_id,
        )
        paid_charge_ids.append(charge.id)
        return FileBatchItemStatus.paid

    @staticmethod
    def import_file(
        db: Session,
        outbound_batch_id,
        file_name: str | None,
        data: bytes,
        content_type: str | None = None,
        actor_user_id: str | None = None,
    ) -> ImportResponseResult:
        outbound = get_by_id(db, FileBatch, outbound_batch_id)
        if not outbound or outbound.direction != FileBatchDirection.outbound:
            raise BatchNotFound("Outbound batch not found", batch_id=str(outbound_batch_id))
        file_hash = sha256_of_buffer(data)

        existing, reason = ResponseBatchImporter._find_duplicate(db, outbound, file_hash)
        if existing:
            return ResponseBatchImporter._duplicate_result(
                db, outbound, existing, reason, file_name, file_hash, None, actor_user_id
            )
        if outbound.status not in IMPORTABLE_OUTBOUND_STATUSES:
            raise ConsistencyError(
                f"Outbound batch is {outbound.status.value}; only exported batches take responses",
                batch_id=str(outbound.id),
                status=outbound.status.value,
            )

        config = load_collections_config(db)
        adapter = adapter_for(config, outbound.adapter)
        try:
            parsed = ResponseBatchImporter._parse(adapter, file_name, data)
        except AdapterMismatch as exc:
            ResponseBatchImporter._record_run(
                db,
                FileImportRunStatus.invalid,
                outbound,
                file_name,
                file_hash,
                adapter,
                actor_user_id,
                error_message=exc.message,
                metadata={"code": exc.code, **exc.details},
            )
            db.commit()
            logger.warning(f"Rejected response file {file_name!r} for batch {outbound.id}: {exc.message}")
            raise

        if config.pd_inbound_dedupe_by_totals:
            existing, reason = ResponseBatchImporter._find_duplicate(
                db, outbound, file_hash, adapter, parsed
            )
            if existing:
                return ResponseBatchImporter._duplicate_result(
                    db, outbound, existing, reason, file_name, file_hash, adapter,
                    actor_user_id, parsed,
                )
        if outbound.status == FileBatchStatus.reconciled:
            raise BatchAlreadyReconciled(
                "Outbound batch is already reconciled", batch_id=str(outbound.id)
            )

        return ResponseBatchImporter._persist(
            db, config, outbound, adapter, parsed, file_name, data, file_hash,
            content_type, actor_user_id,
        )

    @staticmethod
    def _persist(
        db: Session,
        config: CollectionsConfig,
        outbound: FileBatch,
        adapter: BankFileAdapter,
        parsed: ParsedInboundFile,
        file_name: str | None,
        data: bytes,
        file_hash: str,
        content_type: str | None,
        actor_user_id: str | None,
    ) -> ImportResponseResult:
        computed = parsed.computed
        inbound = FileBatch(
            id=uuid.uuid4(),
            parent_batch_id=outbound.id,
            direction=FileBatchDirection.inbound,
            channel=outbound.channel,
            file_type=outbound.file_type,
            adapter=adapter.name,
            adapter_version=parsed.version,
            business_date=outbound.business_date,
            status=FileBatchStatus.created,
            original_file_name=file_name,
            sha256=file_hash,
            file_hash=file_hash,
            record_count=computed.record_count,
            amount_total=computed.amount_total,
            total_rows=len(parsed.rows),
            created_by=actor_user_id,
        )
        storage_key = build_storage_key(
            FileBatchDirection.inbound.value, outbound.business_date, inbound.id, file_name
        )
        inbound.storage_key = storage_key

        summary = ImportSummary(total_rows=len(parsed.rows))
        paid_charge_ids: list = []
        processed_at = utcnow()
        by_reference = {item.external_reference: item for item in outbound.items if item.external_reference}
        by_hash = {item.row_hash: item for item in outbound.items if item.row_hash}

        claim = db.begin_nested()
        try:
            db.add(inbound)
            db.flush()
            claim.commit()
        except IntegrityError:
            # Same content imported concurrently for this outbound batch.
            claim.rollback()
            existing, reason = ResponseBatchImporter._find_duplicate(db, outbound, file_hash)
            if not existing:
                raise
            return ResponseBatchImporter._duplicate_result(
                db, outbound, existing, reason, file_name, file_hash, adapter,
                actor_user_id, parsed,
            )

        uploaded = False
        nested = db.begin_nested()
        try:
            upload_batch_file(storage_key, data, content_type or adapter.content_type)
            uploaded = True
            for row in parsed.rows:
                outbound_item = by_reference.get(row.external_reference) or by_hash.get(row.row_hash)
                status = ResponseBatchImporter._apply_row(
                    db, adapter, row, outbound_item, summary, processed_at,
                    actor_user_id, paid_charge_ids,
                )
                if outbound_item and outbound_item.status == FileBatchItemStatus.pending:
                    outbound_item.status = status
                    outbound_item.response_code = row.result_code
                    outbound_item.response_message = row.error or row.message
                    outbound_item.processed_at = processed_at
                db.add(
                    FileBatchItem(
                        batch_id=inbound.id,
                        attempt_id=outbound_item.attempt_id if outbound_item else None,
                        charge_id=outbound_item.charge_id if outbound_item else None,
                        line_no=row.line_no,
                        external_reference=row.external_reference,
                        row_hash=row.row_hash,
                        amount_ars=round_money(row.amount) if row.amount is not None else None,
                        status=status,
                        response_code=row.result_code,
                        response_message=row.error or row.message,
                        paid_reference=row.paid_reference,
                        row_payload=to_json_safe(row.raw) if row.raw else None,
                        processed_at=processed_at,
                    )
                )

            fiscal = FiscalIssuer.autorun_for_paid_charges(
                db, paid_charge_ids, config=config, actor=actor_user_id
            )
            summary.fiscal_issued = fiscal.issued
            summary.fiscal_failed = fiscal.failed

            inbound.status = FileBatchStatus.imported
            inbound.imported_at = processed_at
            inbound.total_paid_rows = summary.paid
            inbound.total_rejected_rows = summary.rejected
            inbound.total_error_rows = summary.error_rows
            inbound.meta = {
                "matched_rows": summary.matched_rows,
                "unmatched_rows": summary.unmatched_rows,
                "late_duplicates": summary.late_duplicates,
                "fiscal_issued": summary.fiscal_issued,
                "fiscal_failed": summary.fiscal_failed,
                "rows_signature": rows_signature(parsed),
                "header": to_json_safe(parsed.header),
            }
            if summary.matched_rows:
                outbound.status = FileBatchStatus.reconciled
                outbound.reconciled_at = processed_at
            # Outbound counters follow its own items, so they never exceed its rows.
            item_statuses = [item.status for item in outbound.items]
            outbound.total_paid_rows = item_statuses.count(FileBatchItemStatus.paid)
            outbound.total_rejected_rows = item_statuses.count(FileBatchItemStatus.rejected)
            outbound.total_error_rows = item_statuses.count(FileBatchItemStatus.error)

            run = ResponseBatchImporter._record_run(
                db, FileImportRunStatus.success, outbound, file_name, file_hash, adapter,
                actor_user_id, inbound=inbound, parsed=parsed,
            )
            emit_event(
                db,
                EventType.response_batch_imported,
                {
                    "outbound_batch_id": str(outbound.id),
                    "file_name": file_name,
                    "file_hash": file_hash,
                    **summary.model_dump(),
                },
                actor=actor_user_id,
                batch_id=inbound.id,
            )
            db.flush()
            nested.commit()
        except Exception as exc:
            nested.rollback()
            if uploaded:
                ResponseBatchImporter._discard_upload(storage_key)
            db.delete(inbound)
            ResponseBatchImporter._record_run(
                db, FileImportRunStatus.failed, outbound, file_name, file_hash, adapter,
                actor_user_id, parsed=parsed, error_message=str(exc) or exc.__class__.__name__,
            )
            db.commit()
            logger.exception(f"Import of {file_name!r} for batch {outbound.id} failed")
            raise
        db.commit()
        for outcome, count in (
            ("paid", summary.paid),
            ("rejected", summary.rejected),
            ("error", summary.error_rows),
            ("unmatched", summary.unmatched_rows),
        ):
            if count:
                COLLECTIONS_IMPORT_ROWS.labels(outcome=outcome).inc(count)

        logger.info(
            f"Imported response {file_name!r} for batch {outbound.id}: rows={summary.total_rows} "
            f"matched={summary.matched_rows} paid={summary.paid} rejected={summary.rejected} "
            f"errors={summary.error_rows} fiscal_issued={summary.fiscal_issued}"
        )
        return ImportResponseResult(
            already_imported=False,
            outbound_batch_id=outbound.id,
            inbound_batch_id=inbound.id,
            import_run_id=run.id,
            summary=summary,
        )


response_importer = ResponseBatchImporter()


def import_response_batch(
    db: Session,
    outbound_batch_id,
    file_name: str | None,
    data: bytes,
    content_type: str | None = None,
    actor_user_id: str | None = None,
) -> ImportResponseResult:
    return ResponseBatchImporter.import_file(
        db, outbound_batch_id, file_name, data, content_type, actor_user_id
    )
