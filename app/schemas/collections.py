from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.billing import (
    AttemptStatus,
    ChargeStatus,
    FiscalDocumentStatus,
    ReconciliationStatus,
)
from app.models.collections import FileBatchDirection, FileBatchStatus


class ActorFields(BaseModel):
    actor_user_id: str | None = Field(default=None, max_length=120)
    actor_tenant_id: UUID | None = None


class AnchorRunRequest(ActorFields):
    anchor_date: date | None = None
    override_fx: bool = False
    tenant_ids: list[UUID] | None = None


class FxRateUsed(BaseModel):
    rate_date: date
    ars_per_usd: Decimal


class AnchorRunError(BaseModel):
    tenant_id: UUID
    subscription_id: UUID | None = None
    code: str
    message: str


class AnchorSummary(BaseModel):
    anchor_date: date
    override_fx: bool
    subscriptions_total: int = 0
    subscriptions_processed: int = 0
    subscriptions_not_due: int = 0
    cycles_created: int = 0
    charges_created: int = 0
    attempts_created: int = 0
    skipped_idempotent: int = 0
    fx_rates_used: list[FxRateUsed] = Field(default_factory=list)
    errors: list[AnchorRunError] = Field(default_factory=list)


class PreparePresentmentRequest(ActorFields):
    business_date: date | None = None
    adapter: str | None = None
    dry_run: bool = False
    force: bool = False
    cutoff: datetime | None = None


class PreparePresentmentResult(BaseModel):
    no_op: bool
    dry_run: bool = False
    batch_id: UUID | None = None
    business_date: date
    adapter: str
    eligible_attempts: int = 0
    record_count: int = 0
    amount_total: Decimal = Decimal("0.00")
    status: FileBatchStatus | None = None
    reason: str | None = None
    deferred_by_cutoff: int = 0
    tenants_considered: int = 0
    tenants_processed: int = 0
    tenants_skipped_disabled: int = 0


class ExportPresentmentRequest(ActorFields):
    pass


class ExportPresentmentResult(BaseModel):
    batch_id: UUID
    already_exported: bool
    status: FileBatchStatus
    storage_key: str | None = None
    file_name: str | None = None
    sha256: str | None = None
    record_count: int = 0
    amount_total: Decimal = Decimal("0.00")


class ExportPendingRequest(ActorFields):
    adapter: str | None = None


class ExportPendingError(BaseModel):
    batch_id: UUID
    message: str


class ExportPendingResult(BaseModel):
    no_op: bool
    batches_considered: int = 0
    batches_exported: int = 0
    already_exported: int = 0
    batch_ids: list[UUID] = Field(default_factory=list)
    errors: list[ExportPendingError] = Field(default_factory=list)


class CreatePresentmentResult(BaseModel):
    prepare: PreparePresentmentResult
    export: ExportPresentmentResult | None = None


class ImportSummary(BaseModel):
    total_rows: int = 0
    matched_rows: int = 0
    paid: int = 0
    rejected: int = 0
    error_rows: int = 0
    unmatched_rows: int = 0
    late_duplicates: int = 0
    fiscal_issued: int = 0
    fiscal_failed: int = 0


class ImportResponseResult(BaseModel):
    already_imported: bool
    outbound_batch_id: UUID
    inbound_batch_id: UUID | None = None
    import_run_id: UUID | None = None
    duplicate_reason: str | None = None
    summary: ImportSummary


class ClosureResult(BaseModel):
    charge_id: UUID
    closed: bool
    already_paid: bool
    paid_via_channel: str | None = None
    paid_at: datetime | None = None
    amount_ars_paid: Decimal | None = None
    canceled_attempts: int = 0


class RejectionResult(BaseModel):
    charge_id: UUID
    stage: int
    final_rejection: bool = False
    fallback_created: bool = False
    fallback_intent_id: UUID | None = None
    reason: str | None = None


class FiscalIssueResult(BaseModel):
    document_id: UUID
    charge_id: UUID
    document_type: str
    status: FiscalDocumentStatus
    already_issued: bool = False
    issuer_reference: str | None = None
    retry_count: int = 0
    error_message: str | None = None


class FiscalAutorunResult(BaseModel):
    enabled: bool
    issued: int = 0
    failed: int = 0


class FileBatchRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    sequence_no: int | None = None
    parent_batch_id: UUID | None = None
    direction: FileBatchDirection
    adapter: str
    adapter_version: str | None = None
    business_date: date
    status: FileBatchStatus
    storage_key: str | None = None
    original_file_name: str | None = None
    sha256: str | None = None
    record_count: int
    amount_total: Decimal
    total_rows: int
    total_paid_rows: int
    total_rejected_rows: int
    total_error_rows: int
    exported_at: datetime | None = None
    imported_at: datetime | None = None
    created_at: datetime


class AttemptRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    attempt_no: int
    status: AttemptStatus
    channel: str
    payment_method_id: UUID | None = None
    scheduled_for: datetime | None = None
    processed_at: datetime | None = None
    external_reference: str | None = None
    paid_reference: str | None = None
    rejection_code: str | None = None
    rejection_reason: str | None = None
    processor_result_code: str | None = None
    processor_result_message: str | None = None
    processor_trace_id: str | None = None
    processor_settlement_date: datetime | None = None


class ChargeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    tenant_charge_no: int | None = None
    subscription_id: UUID | None = None
    cycle_id: UUID | None = None
    period_start: date | None = None
    period_end: date | None = None
    due_date: date | None = None
    status: ChargeStatus
    label: str | None = None
    total_usd: Decimal
    fx_rate: Decimal | None = None
    amount_ars_due: Decimal
    amount_ars_paid: Decimal | None = None
    paid_at: datetime | None = None
    paid_reference: str | None = None
    paid_currency: str | None = None
    paid_via_channel: str | None = None
    reconciliation_status: ReconciliationStatus
    idempotency_key: str
    dunning_stage: int
    attempts: list[AttemptRead] = Field(default_factory=list)
